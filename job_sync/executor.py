"""Enrich one job: call the provider, gate groups by confidence, persist what passes."""

from __future__ import annotations

import logging
from typing import Any

from .config import EnrichmentConfig
from .errors import EnrichmentError
from .models import EnrichedData, EnrichmentOutcome, JobText
from .providers.base import EnrichmentProvider
from .store import JobStore

logger = logging.getLogger(__name__)


def gate_enriched_data(
    data: EnrichedData,
    config: EnrichmentConfig | None = None,
) -> tuple[dict[str, Any], dict[str, Any], list[str], list[str]]:
    """Split provider output into (fields, collections, accepted, skipped).

    A group is accepted only when its confidence is strictly above its
    threshold and it actually carries data. Skipped groups produce no writes,
    so values stored by earlier runs survive.
    """
    config = config or EnrichmentConfig()
    fields: dict[str, Any] = {}
    collections: dict[str, Any] = {}
    accepted: list[str] = []
    skipped: list[str] = []

    def gate(name: str, threshold: float, has_data: bool) -> bool:
        group = getattr(data, name)
        ok = has_data and group.confidence > threshold
        (accepted if ok else skipped).append(name)
        return ok

    low = config.optional_threshold

    attrs = data.job_attributes.model_dump(exclude={"confidence"})
    if gate("job_attributes", config.attributes_threshold, _any_set(attrs)):
        fields.update(attrs)

    details = data.job_details.model_dump(exclude={"confidence"})
    if gate("job_details", low, _any_set(details)):
        fields.update(details)

    if gate("keywords", low, bool(data.keywords.keywords)):
        collections["keywords"] = _dedupe(data.keywords.keywords)

    req = data.application_requirements
    if gate("application_requirements", low, bool(req.document_types)):
        collections["application_requirements"] = req.model_dump(exclude={"confidence"})

    if gate("language_requirements", low, bool(data.language_requirements.languages)):
        collections["language_requirements"] = _dedupe(data.language_requirements.languages)

    if gate("suitable_backgrounds", low, bool(data.suitable_backgrounds.backgrounds)):
        collections["suitable_backgrounds"] = _dedupe(data.suitable_backgrounds.backgrounds)

    geo = data.geo_location
    if gate("geo_location", low, geo.lat is not None and geo.lon is not None):
        collections["geo_location"] = {"lat": geo.lat, "lon": geo.lon}

    contact = data.contact.model_dump(exclude={"confidence"})
    if gate("contact", low, _any_set(contact)):
        collections["contact"] = contact

    if gate("research_areas", low, bool(data.research_areas.research_areas)):
        collections["research_areas"] = _dedupe(data.research_areas.research_areas)

    return fields, collections, accepted, skipped


def _any_set(values: dict[str, Any]) -> bool:
    return any(v is not None for v in values.values())


def _dedupe(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for v in values:
        v = v.strip()
        if v and v.lower() not in seen:
            seen.add(v.lower())
            out.append(v)
    return out


class EnrichmentExecutor:
    """Performs the enrichment work for exactly one job.

    Writes enriched content only; queue state belongs to the runner.
    """

    def __init__(
        self,
        store: JobStore,
        provider: EnrichmentProvider,
        config: EnrichmentConfig | None = None,
    ):
        self.store = store
        self.provider = provider
        self.config = config or EnrichmentConfig()

    def enrich_one(self, job_id: int) -> EnrichmentOutcome:
        try:
            record = self.store.get(job_id)
            job = JobText.from_record(record) if record is not None else None
        except Exception as e:
            raise EnrichmentError(
                f"Could not load job: {type(e).__name__}: {e}", "load", job_id, e
            ) from e
        if job is None:
            raise EnrichmentError("Job not found", "load", job_id)

        try:
            data = self.provider.enrich_job(job)
        except EnrichmentError as e:
            if e.job_id is None:
                e.job_id = job_id
            raise
        except Exception as e:
            raise EnrichmentError(
                f"{type(e).__name__}: {e}", "provider", job_id, e
            ) from e

        fields, collections, accepted, skipped = gate_enriched_data(data, self.config)
        try:
            saved = self.store.save_enrichment(job_id, fields, collections)
        except Exception as e:
            raise EnrichmentError(
                f"Could not persist enrichment: {type(e).__name__}: {e}", "persist", job_id, e
            ) from e
        if not saved:
            raise EnrichmentError("Job disappeared before enrichment was saved", "persist", job_id)

        logger.info(
            "Job %d enriched by %s: accepted=%s skipped=%s",
            job_id, getattr(self.provider, "name", "provider"), accepted, skipped,
        )
        return EnrichmentOutcome(job_id=job_id, accepted=accepted, skipped=skipped)
