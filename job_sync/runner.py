"""Sequential enrichment runner: the control loop over queue and executor."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta

from .config import RunnerConfig
from .errors import EnrichmentError, ServiceUnavailableError
from .executor import EnrichmentExecutor
from .models import RunStats
from .queue import EnrichmentQueue

logger = logging.getLogger(__name__)


class SequentialEnrichmentRunner:
    """Processes one job at a time until the queue is empty or the run limit is hit.

    Re-invoking the runner is the caller's job (cron, operator, ``sync --enrich``).
    """

    def __init__(
        self,
        queue: EnrichmentQueue,
        executor: EnrichmentExecutor,
        config: RunnerConfig | None = None,
    ):
        self.queue = queue
        self.executor = executor
        self.config = config or RunnerConfig()

    def _check_provider(self) -> None:
        provider = self.executor.provider
        name = getattr(provider, "name", "provider")
        if not provider.is_available():
            raise ServiceUnavailableError(name, "provider is not configured")
        if self.config.check_health and not provider.is_healthy():
            raise ServiceUnavailableError(name, "health check failed")

    def _enrich_with_timeout(self, job_id: int) -> None:
        timeout = self.config.job_timeout_seconds
        if not timeout:
            self.executor.enrich_one(job_id)
            return
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"enrich-{job_id}")
        try:
            future = pool.submit(self.executor.enrich_one, job_id)
            try:
                future.result(timeout=timeout)
            except FutureTimeout as e:
                future.cancel()
                raise EnrichmentError(
                    f"Enrichment exceeded {timeout:g}s", "timeout", job_id, e
                ) from e
        finally:
            # Do not block on a hung provider call.
            pool.shutdown(wait=False)

    def _record_success(self, job_id: int) -> None:
        try:
            self.queue.mark_enriched(job_id)
        except Exception as e:
            raise EnrichmentError(
                f"Could not mark job enriched: {type(e).__name__}: {e}", "mark_enriched", job_id, e
            ) from e

    def run(self) -> RunStats:
        started = time.monotonic()
        stats = RunStats()
        self._check_provider()

        if self.config.stale_after_minutes:
            stats.reclaimed = self.queue.reclaim_stale(
                timedelta(minutes=self.config.stale_after_minutes)
            )

        max_jobs = self.config.max_jobs_per_run
        delay = self.config.delay_between_jobs
        logger.info("Enrichment run starting (max_jobs=%d, delay=%.1fs)", max_jobs, delay)

        while stats.processed < max_jobs:
            job = self.queue.select_next()
            if job is None:
                logger.info("Queue empty")
                break
            stats.attempts += 1
            try:
                self._enrich_with_timeout(job.id)
                self._record_success(job.id)
                stats.processed += 1
            except EnrichmentError as e:
                # A failing mark_failed propagates regardless of continue_on_error.
                stats.failed += 1
                stats.errors.append(f"job {job.id}: {e}")
                logger.warning("Job %d failed (attempt %d): %s", job.id, job.attempt_count, e)
                self.queue.mark_failed(job.id, str(e))
                if not self.config.continue_on_error:
                    raise
            if stats.processed < max_jobs and delay > 0:
                time.sleep(delay)

        stats.duration_seconds = round(time.monotonic() - started, 3)
        stats.snapshot = self.queue.progress_snapshot()
        logger.info(
            "Enrichment run done: %d enriched, %d failed in %.1fs",
            stats.processed, stats.failed, stats.duration_seconds,
        )
        return stats
