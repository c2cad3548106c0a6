"""Shared fixtures for the job_sync tests."""

from __future__ import annotations

from pathlib import Path

from job_sync.models import EnrichedData, JobText, NormalizedJob
from job_sync.store import JobStore


def make_job(n: int = 1, **overrides) -> NormalizedJob:
    data = {
        "title": f"Postdoctoral Researcher {n}",
        "source_url": f"https://jobs.example.edu/{n}",
        "institution": "Example University",
        "location": "Berlin, Germany",
        "department": "Physics",
        "discipline": "Physics",
        "description_text": "Work on quantum materials.",
        "keywords": ["quantum", "materials"],
    }
    data.update(overrides)
    return NormalizedJob(**data)


def seed_jobs(store: JobStore, count: int) -> list[int]:
    ids = []
    for n in range(1, count + 1):
        store.upsert_job(make_job(n))
        ids.append(store.get_by_url(f"https://jobs.example.edu/{n}").id)
    return ids


def open_store(tmpdir: str) -> JobStore:
    return JobStore(Path(tmpdir) / "jobs.db")


def enriched(**groups) -> EnrichedData:
    return EnrichedData.model_validate(groups)


class FakeProvider:
    """Provider double that returns canned data or raises."""

    name = "fake"

    def __init__(self, data: EnrichedData | None = None, error: Exception | None = None,
                 available: bool = True, healthy: bool = True):
        self.data = data or EnrichedData()
        self.error = error
        self.available = available
        self.healthy = healthy
        self.calls: list[JobText] = []

    def enrich_job(self, job: JobText) -> EnrichedData:
        self.calls.append(job)
        if self.error is not None:
            raise self.error
        return self.data

    def is_available(self) -> bool:
        return self.available

    def is_healthy(self) -> bool:
        return self.healthy
