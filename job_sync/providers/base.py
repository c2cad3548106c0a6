"""Provider interface and the prompt/response contract shared by adapters."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from ..errors import EnrichmentValidationError
from ..models import EnrichedData, JobText


@runtime_checkable
class EnrichmentProvider(Protocol):
    """Anything that turns job text into EnrichedData."""

    name: str

    def enrich_job(self, job: JobText) -> EnrichedData: ...

    def is_available(self) -> bool: ...

    def is_healthy(self) -> bool: ...


SYSTEM_PROMPT = """\
You extract structured facts from academic job postings.
Return ONE JSON object with exactly these keys. Every group has a "confidence"
between 0 and 1 saying how sure you are the group is correct; use 0 and empty
values when the posting says nothing about it. Never guess contact details.

{
  "keywords": {"keywords": [string], "confidence": number},
  "job_attributes": {
    "category": string|null, "work_modality": "on-site"|"remote"|"hybrid"|null,
    "contract_type": string|null, "duration_months": integer|null,
    "renewable": boolean|null, "funding_source": string|null,
    "visa_sponsorship": boolean|null, "interview_process": string|null,
    "confidence": number
  },
  "job_details": {
    "is_self_financed": boolean|null, "is_part_time": boolean|null,
    "work_hours_per_week": integer|null, "compensation_type": string|null,
    "confidence": number
  },
  "application_requirements": {
    "document_types": [string], "reference_letters_required": integer|null,
    "platform": string|null, "confidence": number
  },
  "language_requirements": {"languages": [string], "confidence": number},
  "suitable_backgrounds": {"backgrounds": [string], "confidence": number},
  "geo_location": {"lat": number|null, "lon": number|null, "confidence": number},
  "contact": {"name": string|null, "email": string|null, "title": string|null, "confidence": number},
  "research_areas": {"research_areas": [string], "confidence": number}
}
"""


def build_user_prompt(job: JobText, max_chars: int = 12000) -> str:
    sections = [
        f"Title: {job.title}",
        f"Institution: {job.institution}" if job.institution else "",
        f"Location: {job.location}" if job.location else "",
        f"Salary: {job.salary}" if job.salary else "",
        f"Description:\n{job.description[:max_chars]}",
        f"Qualifications:\n{job.qualifications}" if job.qualifications else "",
        f"How to apply:\n{job.instructions}" if job.instructions else "",
    ]
    return "\n\n".join(s for s in sections if s)


def parse_enriched(payload: Any, job_id: int | None = None) -> EnrichedData:
    """Validate a provider's JSON payload against the EnrichedData schema."""
    try:
        return EnrichedData.model_validate(payload)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise EnrichmentValidationError(
            f"Provider output failed validation ({len(errors)} error(s))",
            job_id=job_id,
            errors=errors,
        ) from e
