"""Sync cycle: extract → transform → load, lifecycle updates, then optional enrichment."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Optional, Protocol

from .config import AppConfig
from .errors import ExtractionError, TransformError
from .models import RawJobPosting, SyncResult
from .providers.base import EnrichmentProvider
from .runner import SequentialEnrichmentRunner
from .store import JobStore
from .transform import TransformOptions, transform

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    def fetch_page(self, page: int, page_size: Optional[int] = None) -> list[RawJobPosting]: ...


class SyncOrchestrator:
    def __init__(
        self,
        store: JobStore,
        extractor: Extractor,
        config: AppConfig,
        provider: EnrichmentProvider | None = None,
        runner: SequentialEnrichmentRunner | None = None,
    ):
        self.store = store
        self.extractor = extractor
        self.config = config
        self.provider = provider
        self.runner = runner
        self.transform_options = TransformOptions(
            source_portal=config.source.source_portal,
            llm_attributes=config.sync.llm_attributes,
            attributes_threshold=config.enrichment.attributes_threshold,
        )

    def run(self, enrich: bool = False) -> SyncResult:
        started = time.monotonic()
        result = SyncResult()
        result.sync_id = self.store.start_sync()
        logger.info("Sync %d started", result.sync_id)

        try:
            seen_urls, pages_failed = self._sync_pages(result)
            self._update_lifecycle(result, seen_urls, pages_failed)
        except Exception as e:
            result.status = "failed"
            result.errors.append(str(e))
            self.store.fail_sync(result.sync_id, str(e))
            logger.error("Sync %d failed: %s", result.sync_id, e)
            raise

        result.status = "partial" if result.errors else "success"
        self.store.finish_sync(
            result.sync_id,
            status=result.status,
            errors=result.errors,
            jobs_fetched=result.jobs_fetched,
            jobs_created=result.jobs_created,
            jobs_updated=result.jobs_updated,
            jobs_expired=result.jobs_expired,
            jobs_removed=result.jobs_removed,
        )
        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Sync %d %s: fetched=%d created=%d updated=%d expired=%d removed=%d (%.1fs)",
            result.sync_id, result.status, result.jobs_fetched, result.jobs_created,
            result.jobs_updated, result.jobs_expired, result.jobs_removed,
            result.duration_seconds,
        )

        if enrich:
            if self.runner is None:
                raise ValueError("enrich=True requires an enrichment runner")
            result.enrichment = self.runner.run()
        return result

    def _sync_pages(self, result: SyncResult) -> tuple[set[str], bool]:
        source = self.config.source
        sync = self.config.sync
        seen_urls: set[str] = set()
        pages_failed = False
        page = 1

        while source.max_pages is None or page <= source.max_pages:
            try:
                records = self.extractor.fetch_page(page, source.page_size)
            except ExtractionError as e:
                pages_failed = True
                result.errors.append(f"page {page}: {e}")
                logger.error("Page %d failed: %s", page, e)
                if not sync.continue_on_error:
                    raise
                # An unreadable page gives no signal about how many remain.
                break

            result.pages += 1
            result.jobs_fetched += len(records)
            for record in records:
                self._load_record(record, result, seen_urls)

            if len(records) < source.page_size:
                break
            page += 1
            if source.request_delay > 0:
                time.sleep(source.request_delay)

        if not sync.dry_run:
            self.store.update_sync(
                result.sync_id,
                jobs_fetched=result.jobs_fetched,
                jobs_created=result.jobs_created,
                jobs_updated=result.jobs_updated,
            )
        return seen_urls, pages_failed

    def _load_record(self, record: RawJobPosting, result: SyncResult, seen_urls: set[str]) -> None:
        try:
            job = transform(record, self.transform_options, self.provider)
        except TransformError as e:
            result.jobs_skipped += 1
            logger.warning("Skipping record: %s", e)
            return

        seen_urls.add(job.source_url)
        if self.config.sync.dry_run:
            logger.debug("[dry-run] would load %s", job.source_url)
            return
        outcome = self.store.upsert_job(job)
        if outcome == "created":
            result.jobs_created += 1
        else:
            result.jobs_updated += 1

    def _update_lifecycle(self, result: SyncResult, seen_urls: set[str], pages_failed: bool) -> None:
        sync = self.config.sync
        if sync.dry_run:
            return
        result.jobs_expired = self.store.mark_expired_jobs()
        if pages_failed:
            logger.warning("Skipping removal check: not every page was fetched")
        else:
            result.jobs_removed = self.store.mark_removed_jobs(
                seen_urls, grace=timedelta(hours=sync.removal_grace_hours)
            )
        result.jobs_archived = self.store.archive_old_jobs(
            timedelta(days=sync.archive_after_days)
        )
