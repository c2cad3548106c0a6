"""job_sync: academic job ETL with a retryable LLM enrichment queue."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .executor import EnrichmentExecutor
from .extract import JobSourceClient
from .models import RunStats, SyncResult
from .orchestrator import SyncOrchestrator
from .providers import EnrichmentProvider, build_provider
from .queue import EnrichmentQueue
from .runner import SequentialEnrichmentRunner
from .store import JobStore
from .tracing import TraceRecorder

logger = logging.getLogger(__name__)


def build_runner(
    store: JobStore,
    provider: EnrichmentProvider,
    config: AppConfig,
) -> SequentialEnrichmentRunner:
    """Wire queue, executor and runner around one store and one provider."""
    queue = EnrichmentQueue(store, config.queue)
    executor = EnrichmentExecutor(store, provider, config.enrichment)
    return SequentialEnrichmentRunner(queue, executor, config.runner)


def _build_provider(config: AppConfig, run_kind: str) -> EnrichmentProvider:
    recorder = None
    if config.llm.trace_dir:
        recorder = TraceRecorder.start(config.llm.trace_dir, run_kind)
    return build_provider(config.llm, trace_recorder=recorder)


def sync_jobs(
    config_path: Optional[Path] = None,
    config: Optional[AppConfig] = None,
    db_path: Optional[Path] = None,
    enrich: bool = False,
    provider: Optional[EnrichmentProvider] = None,
) -> SyncResult:
    """Run a full sync cycle. This is the public API.

    Args:
        config_path: Path to a YAML config override.
        config: Pre-built config (takes precedence over config_path).
        db_path: SQLite file; defaults to JOB_SYNC_DB or the user data dir.
        enrich: Run the enrichment runner after loading.
        provider: Pre-built provider (defaults to one built from config.llm).
    """
    if config is None:
        config = load_config(config_path)
    needs_provider = enrich or config.sync.llm_attributes
    if provider is None and needs_provider:
        provider = _build_provider(config, "sync")

    with JobStore(db_path) as store:
        runner = build_runner(store, provider, config) if enrich else None
        orchestrator = SyncOrchestrator(
            store, JobSourceClient(config.source), config, provider=provider, runner=runner
        )
        return orchestrator.run(enrich=enrich)


def enrich_jobs(
    config_path: Optional[Path] = None,
    config: Optional[AppConfig] = None,
    db_path: Optional[Path] = None,
    provider: Optional[EnrichmentProvider] = None,
) -> RunStats:
    """Drain the enrichment queue once, up to runner.max_jobs_per_run jobs."""
    if config is None:
        config = load_config(config_path)
    if provider is None:
        provider = _build_provider(config, "enrich")
    with JobStore(db_path) as store:
        return build_runner(store, provider, config).run()
