"""Data models for job sync and enrichment."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EnrichmentStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    enriched = "enriched"
    failed = "failed"


class JobLifecycle(str, Enum):
    active = "active"
    expired = "expired"
    removed = "removed"


# --- Upstream API ---


class RawJobPosting(BaseModel):
    """One record as returned by the upstream job listing API."""

    id: int
    name: str = ""
    univ: str = ""
    url: str = ""
    description: str = ""
    deadline_raw: str = ""
    unit_name: str = ""
    disc: str = ""
    close_date_raw: str = ""
    salary: str = ""
    location: str = ""
    tag: str = ""
    instructions: str = ""
    open_date_raw: str = ""
    legacy_position_id: Optional[int] = None
    qualifications: str = ""
    apply: str = ""


class JobListingResponse(BaseModel):
    results: list[RawJobPosting] = Field(default_factory=list)
    page: int = 1
    limit: int = 0
    count: int = 0
    total_count: int = 0


# --- Normalized / persisted ---


class NormalizedJob(BaseModel):
    """Deterministically transformed posting, ready to load."""

    title: str
    source_url: str
    source_portal: str = "academic_jobs"
    description_html: Optional[str] = None
    description_text: Optional[str] = None
    instructions: Optional[str] = None
    qualifications: Optional[str] = None
    salary_range: Optional[str] = None
    seniority_level: Optional[str] = None
    job_type: Optional[str] = None
    open_date: Optional[datetime] = None
    close_date: Optional[datetime] = None
    deadline_date: Optional[datetime] = None
    application_link: Optional[str] = None
    legacy_position_id: Optional[int] = None
    institution: str
    location: Optional[str] = None
    department: str = "General Department"
    discipline: str = ""
    keywords: list[str] = Field(default_factory=list)
    # Only populated when the transform runs the optional LLM attribute pass.
    category: Optional[str] = None
    work_modality: Optional[str] = None
    contract_type: Optional[str] = None
    duration_months: Optional[int] = None
    renewable: Optional[bool] = None
    funding_source: Optional[str] = None
    visa_sponsorship: Optional[bool] = None
    interview_process: Optional[str] = None


class JobRecord(BaseModel):
    """A row of job_postings joined with its institution."""

    id: int
    title: str
    source_url: str
    description_html: Optional[str] = None
    description_text: Optional[str] = None
    instructions: Optional[str] = None
    qualifications: Optional[str] = None
    salary_range: Optional[str] = None
    seniority_level: Optional[str] = None
    job_type: Optional[str] = None
    institution: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    work_modality: Optional[str] = None
    contract_type: Optional[str] = None
    duration_months: Optional[int] = None
    renewable: Optional[bool] = None
    funding_source: Optional[str] = None
    visa_sponsorship: Optional[bool] = None
    interview_process: Optional[str] = None
    is_self_financed: Optional[bool] = None
    is_part_time: Optional[bool] = None
    work_hours_per_week: Optional[int] = None
    compensation_type: Optional[str] = None
    status: JobLifecycle = JobLifecycle.active
    last_synced_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    enrichment_status: EnrichmentStatus = EnrichmentStatus.pending
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    enriched_at: Optional[datetime] = None
    enrichment_error: Optional[str] = None


class JobText(BaseModel):
    """The text of a job that enrichment providers read."""

    id: int
    title: str
    description: str = ""
    qualifications: str = ""
    salary: str = ""
    instructions: str = ""
    institution: str = ""
    location: str = ""

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobText":
        return cls(
            id=record.id,
            title=record.title,
            description=record.description_text or record.description_html or "",
            qualifications=record.qualifications or "",
            salary=record.salary_range or "",
            instructions=record.instructions or "",
            institution=record.institution or "",
            location=record.location or "",
        )


class JobEnrichmentStatus(BaseModel):
    id: int
    title: str
    enrichment_status: EnrichmentStatus
    enrichment_error: Optional[str] = None
    enriched_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    attempt_count: int = 0


class EnrichmentStats(BaseModel):
    total: int = 0
    pending: int = 0
    enriched: int = 0
    failed: int = 0
    in_progress: int = 0


# --- Provider output ---


class _Group(BaseModel):
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class Keywords(_Group):
    keywords: list[str] = Field(default_factory=list)


class JobAttributes(_Group):
    category: Optional[str] = None
    work_modality: Optional[str] = None
    contract_type: Optional[str] = None
    duration_months: Optional[int] = None
    renewable: Optional[bool] = None
    funding_source: Optional[str] = None
    visa_sponsorship: Optional[bool] = None
    interview_process: Optional[str] = None


class JobDetails(_Group):
    is_self_financed: Optional[bool] = None
    is_part_time: Optional[bool] = None
    work_hours_per_week: Optional[int] = None
    compensation_type: Optional[str] = None


class ApplicationRequirements(_Group):
    document_types: list[str] = Field(default_factory=list)
    reference_letters_required: Optional[int] = None
    platform: Optional[str] = None


class LanguageRequirements(_Group):
    languages: list[str] = Field(default_factory=list)


class SuitableBackgrounds(_Group):
    backgrounds: list[str] = Field(default_factory=list)


class GeoLocation(_Group):
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)


class Contact(_Group):
    name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None


class ResearchAreas(_Group):
    research_areas: list[str] = Field(default_factory=list)


class EnrichedData(BaseModel):
    """Structured output of one provider call. Missing groups count as zero confidence."""

    keywords: Keywords = Field(default_factory=Keywords)
    job_attributes: JobAttributes = Field(default_factory=JobAttributes)
    job_details: JobDetails = Field(default_factory=JobDetails)
    application_requirements: ApplicationRequirements = Field(default_factory=ApplicationRequirements)
    language_requirements: LanguageRequirements = Field(default_factory=LanguageRequirements)
    suitable_backgrounds: SuitableBackgrounds = Field(default_factory=SuitableBackgrounds)
    geo_location: GeoLocation = Field(default_factory=GeoLocation)
    contact: Contact = Field(default_factory=Contact)
    research_areas: ResearchAreas = Field(default_factory=ResearchAreas)


# --- Run outputs ---


class EnrichmentOutcome(BaseModel):
    job_id: int
    accepted: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class RunStats(BaseModel):
    """Aggregate result of one sequential enrichment run."""

    processed: int = 0
    failed: int = 0
    attempts: int = 0
    reclaimed: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = Field(default_factory=list)
    snapshot: Optional[EnrichmentStats] = None

    @computed_field
    @property
    def enriched(self) -> int:
        return self.processed


class SyncResult(BaseModel):
    """Top-level output of a sync cycle."""

    sync_id: Optional[int] = None
    status: str = "running"
    timestamp: datetime = Field(default_factory=utc_now)
    pages: int = 0
    jobs_fetched: int = 0
    jobs_skipped: int = 0
    jobs_created: int = 0
    jobs_updated: int = 0
    jobs_expired: int = 0
    jobs_removed: int = 0
    jobs_archived: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = Field(default_factory=list)
    enrichment: Optional[RunStats] = None
