"""CLI: python -m job_sync"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import enrich_jobs, sync_jobs
from .config import load_config
from .errors import EnrichmentError, ExtractionError, InvalidTransitionError, JobNotFoundError
from .models import EnrichmentStats, RunStats
from .queue import EnrichmentQueue
from .store import JobStore

app = typer.Typer(help="Academic job sync with a retryable LLM enrichment queue")
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML config override")
DbOption = typer.Option(None, "--db", help="SQLite database path (default: $JOB_SYNC_DB)")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )


def _snapshot_table(snapshot: EnrichmentStats, title: str = "Enrichment Progress") -> Table:
    table = Table(title=title)
    table.add_column("Status", style="bold")
    table.add_column("Jobs", justify="right")
    table.add_row("Pending", str(snapshot.pending))
    table.add_row("In progress", str(snapshot.in_progress))
    table.add_row("Enriched", str(snapshot.enriched), style="green")
    table.add_row("Failed", str(snapshot.failed), style="red" if snapshot.failed else None)
    table.add_row("───────────", "─────")
    table.add_row("Total active", str(snapshot.total))
    return table


def _print_run_stats(stats: RunStats) -> None:
    table = Table(title="Enrichment Run")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Claimed", str(stats.attempts))
    table.add_row("Enriched", str(stats.processed))
    table.add_row("Failed", str(stats.failed))
    if stats.reclaimed:
        table.add_row("Reclaimed stale", str(stats.reclaimed))
    table.add_row("Duration", f"{stats.duration_seconds:.1f}s")
    console.print(table)
    for err in stats.errors[:10]:
        console.print(f"[red]✗[/red] {escape(err)}")
    if stats.snapshot:
        console.print(_snapshot_table(stats.snapshot))


@app.command()
def sync(
    config: Optional[Path] = ConfigOption,
    db: Optional[Path] = DbOption,
    enrich: bool = typer.Option(False, "--enrich", help="Run the enrichment queue after loading"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Fetch and transform without writing"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Stop after N pages"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run a full sync cycle: extract, transform, load, lifecycle updates."""
    _setup_logging(verbose)
    cfg = load_config(config)
    if dry_run:
        cfg.sync.dry_run = True
    if max_pages is not None:
        cfg.source.max_pages = max_pages

    try:
        result = sync_jobs(config=cfg, db_path=db, enrich=enrich)
    except (ExtractionError, EnrichmentError) as e:
        console.print(f"[red]Sync failed:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    table = Table(title=f"Sync {result.sync_id} ({result.status})")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("Pages", str(result.pages))
    table.add_row("Fetched", str(result.jobs_fetched))
    table.add_row("Skipped", str(result.jobs_skipped))
    table.add_row("Created", str(result.jobs_created))
    table.add_row("Updated", str(result.jobs_updated))
    table.add_row("Expired", str(result.jobs_expired))
    table.add_row("Removed", str(result.jobs_removed))
    table.add_row("Archived", str(result.jobs_archived))
    if result.errors:
        table.add_row("Errors", str(len(result.errors)))
    console.print(table)
    if result.enrichment:
        _print_run_stats(result.enrichment)


@app.command()
def enrich(
    config: Optional[Path] = ConfigOption,
    db: Optional[Path] = DbOption,
    max_jobs: Optional[int] = typer.Option(None, "--max-jobs", "-n", help="Override runner.max_jobs_per_run"),
    delay: Optional[float] = typer.Option(None, "--delay", help="Seconds between jobs"),
    stop_on_error: bool = typer.Option(False, "--stop-on-error", help="Abort on the first failed job"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Process pending and retry-eligible jobs, one at a time."""
    _setup_logging(verbose)
    cfg = load_config(config)
    if max_jobs is not None:
        cfg.runner.max_jobs_per_run = max_jobs
    if delay is not None:
        cfg.runner.delay_between_jobs = delay
    if stop_on_error:
        cfg.runner.continue_on_error = False

    try:
        stats = enrich_jobs(config=cfg, db_path=db)
    except EnrichmentError as e:
        console.print(f"[red]Enrichment aborted:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    _print_run_stats(stats)


@app.command()
def status(db: Optional[Path] = DbOption):
    """Show enrichment progress counts."""
    with JobStore(db) as store:
        snapshot = EnrichmentQueue(store).progress_snapshot()
        db_path = store.db_path
    console.print(_snapshot_table(snapshot))
    console.print(f"Database: {db_path}", style="dim")


@app.command()
def jobs(
    db: Optional[Path] = DbOption,
    failed_only: bool = typer.Option(False, "--failed", help="Only show failed jobs"),
    limit: int = typer.Option(30, "--limit", "-n", help="Rows to show"),
):
    """List per-job enrichment state in selection order."""
    with JobStore(db) as store:
        rows = EnrichmentQueue(store).list_all_job_statuses()
    if failed_only:
        rows = [r for r in rows if r.enrichment_status.value == "failed"]
    if not rows:
        console.print("No jobs.")
        return

    table = Table(title=f"{min(len(rows), limit)} of {len(rows)} Jobs")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last attempt")
    table.add_column("Error", style="red")
    for row in rows[:limit]:
        table.add_row(
            str(row.id),
            escape(row.title[:55]),
            row.enrichment_status.value,
            str(row.attempt_count),
            row.last_attempt_at.strftime("%Y-%m-%d %H:%M") if row.last_attempt_at else "",
            escape((row.enrichment_error or "")[:60]),
        )
    console.print(table)


@app.command()
def reset(
    job_ids: list[int] = typer.Argument(..., help="Job IDs to reset to pending"),
    db: Optional[Path] = DbOption,
):
    """Reset jobs to pending, clearing attempt count and error."""
    failures = 0
    with JobStore(db) as store:
        queue = EnrichmentQueue(store)
        for job_id in job_ids:
            try:
                queue.reset_to_pending(job_id)
                console.print(f"[green]✓[/green] Job {job_id} reset to pending")
            except (JobNotFoundError, InvalidTransitionError) as e:
                failures += 1
                console.print(f"[red]✗[/red] {escape(str(e))}")
    if failures:
        raise typer.Exit(1)


@app.command()
def reclaim(
    db: Optional[Path] = DbOption,
    older_than: float = typer.Option(60.0, "--older-than", help="Minutes since the claim"),
):
    """Mark jobs stuck in progress as failed so they re-enter the retry cycle."""
    with JobStore(db) as store:
        count = EnrichmentQueue(store).reclaim_stale(timedelta(minutes=older_than))
    console.print(f"Reclaimed {count} stale job(s)")


@app.command()
def runs(
    db: Optional[Path] = DbOption,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of sync runs to show"),
):
    """Show recent sync runs."""
    with JobStore(db) as store:
        rows = store.recent_syncs(limit)
    if not rows:
        console.print("No sync runs yet.")
        return

    table = Table(title=f"Last {len(rows)} Syncs")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Fetched", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Expired", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Duration", justify="right")
    for row in rows:
        duration = f"{row['duration_ms'] / 1000:.1f}s" if row["duration_ms"] is not None else ""
        table.add_row(
            str(row["id"]),
            (row["started_at"] or "")[:19],
            row["status"],
            str(row["jobs_fetched"]),
            str(row["jobs_created"]),
            str(row["jobs_updated"]),
            str(row["jobs_expired"]),
            str(row["jobs_removed"]),
            duration,
        )
    console.print(table)


@app.command()
def serve(
    db: Optional[Path] = DbOption,
    host: str = typer.Option("127.0.0.1", "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Serve the read-mostly status API."""
    import uvicorn

    from . import dashboard

    if db is not None:
        dashboard.DB_PATH = str(db)
    uvicorn.run(dashboard.app, host=host, port=port or dashboard.PORT)


if __name__ == "__main__":
    app()
