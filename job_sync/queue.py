"""Enrichment queue: eligibility rule and the per-job status state machine.

The queue is the only component that moves a job into ``in_progress`` and
the only writer of ``enrichment_status``, ``attempt_count`` and
``last_attempt_at``.

    pending --select--> in_progress --success--> enriched
                        in_progress --failure--> failed
    failed (eligible) --select--> in_progress
    pending | failed | in_progress --reset--> pending
    in_progress (stale) --reclaim--> failed
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import QueueConfig
from .errors import InvalidTransitionError, JobNotFoundError
from .models import EnrichmentStats, EnrichmentStatus, JobEnrichmentStatus, utc_now
from .store import JobStore, to_iso

logger = logging.getLogger(__name__)

# Pending before failed, never-attempted first, then oldest attempt.
_SELECTION_ORDER = (
    "CASE enrichment_status WHEN 'pending' THEN 0 ELSE 1 END, "
    "last_attempt_at IS NOT NULL, last_attempt_at, id"
)

RECLAIM_ERROR = "claim expired"


class EnrichmentQueue:
    def __init__(
        self,
        store: JobStore,
        config: QueueConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self.clock = clock

    def eligibility(self, now: datetime) -> tuple[str, dict]:
        """SQL predicate and parameters matching jobs that may be selected at ``now``."""
        where = (
            "status = 'active' AND (enrichment_status = 'pending' OR ("
            "enrichment_status = 'failed' AND "
            "(attempt_count < :quick_limit OR last_attempt_at < :cooldown_cutoff)"
        )
        params = {
            "quick_limit": self.config.quick_retry_limit,
            "cooldown_cutoff": to_iso(now - timedelta(hours=self.config.retry_cooldown_hours)),
        }
        if self.config.max_attempts is not None:
            where += " AND attempt_count < :max_attempts"
            params["max_attempts"] = self.config.max_attempts
        return where + "))", params

    def select_next(self) -> Optional[JobEnrichmentStatus]:
        """Claim the next eligible job, or return None when the queue is empty."""
        now = self.clock()
        where, params = self.eligibility(now)
        row = self.store.claim_one(where, params, _SELECTION_ORDER, now)
        if row is None:
            logger.debug("No eligible jobs")
            return None
        job = JobEnrichmentStatus.model_validate(dict(row))
        logger.debug("Claimed job %d (attempt %d)", job.id, job.attempt_count)
        return job

    def mark_enriched(self, job_id: int) -> None:
        now = self.clock()
        found = self.store.update_enrichment_fields(job_id, {
            "enrichment_status": EnrichmentStatus.enriched.value,
            "enriched_at": now,
            "last_attempt_at": now,
        })
        if not found:
            raise JobNotFoundError(job_id)

    def mark_failed(self, job_id: int, error: str) -> None:
        found = self.store.update_enrichment_fields(job_id, {
            "enrichment_status": EnrichmentStatus.failed.value,
            "enrichment_error": error,
            "last_attempt_at": self.clock(),
        })
        if not found:
            raise JobNotFoundError(job_id)

    def reset_to_pending(self, job_id: int) -> None:
        """Operator reset: back to pending with a clean attempt history.

        Enriched jobs are terminal and cannot be reset.
        """
        previous = self.store.update_job_unless_status(
            job_id,
            {
                "enrichment_status": EnrichmentStatus.pending.value,
                "attempt_count": 0,
                "enrichment_error": None,
            },
            EnrichmentStatus.enriched.value,
        )
        if previous is None:
            raise JobNotFoundError(job_id)
        if previous == EnrichmentStatus.enriched.value:
            raise InvalidTransitionError(f"Job {job_id} is already enriched")
        logger.info("Job %d reset to pending (was %s)", job_id, previous)

    def reclaim_stale(self, older_than: timedelta) -> int:
        """Fail in-progress claims whose last attempt is older than ``older_than``."""
        cutoff = to_iso(self.clock() - older_than)
        count = self.store.update_jobs_where(
            {
                "enrichment_status": EnrichmentStatus.failed.value,
                "enrichment_error": RECLAIM_ERROR,
            },
            "enrichment_status = 'in_progress' AND last_attempt_at < :cutoff",
            {"cutoff": cutoff},
        )
        if count:
            logger.warning("Reclaimed %d stale in-progress job(s)", count)
        return count

    def progress_snapshot(self) -> EnrichmentStats:
        counts = self.store.group_count_by_enrichment_status(active_only=True)
        return EnrichmentStats(
            total=sum(counts.values()),
            pending=counts.get("pending", 0),
            enriched=counts.get("enriched", 0),
            failed=counts.get("failed", 0),
            in_progress=counts.get("in_progress", 0),
        )

    def list_all_job_statuses(self) -> list[JobEnrichmentStatus]:
        rows = self.store.list_enrichment_states(_SELECTION_ORDER, active_only=True)
        return [JobEnrichmentStatus.model_validate(r) for r in rows]
