"""Job Sync status API: FastAPI backend for operators."""

import json
import os
import sqlite3
from pathlib import Path

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import InvalidTransitionError, JobNotFoundError
from .queue import EnrichmentQueue
from .store import JobStore

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
DB_PATH = os.environ.get(
    "JOB_SYNC_DB",
    str(Path.home() / ".local/share/job_sync/jobs.db"),
)
PORT = int(os.environ.get("DASHBOARD_PORT", "8898"))

app = FastAPI(title="Job Sync Status")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


# ---------------------------------------------------------------------------
# Database helper
# ---------------------------------------------------------------------------
def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(f"file:{DB_PATH}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def get_store() -> JobStore:
    return JobStore(Path(DB_PATH), readonly=True)


# ---------------------------------------------------------------------------
# Routes: Enrichment progress
# ---------------------------------------------------------------------------
@app.get("/api/progress")
def progress():
    with get_store() as store:
        snapshot = EnrichmentQueue(store).progress_snapshot()
    data = snapshot.model_dump()
    data["percent_enriched"] = round(100 * snapshot.enriched / snapshot.total, 1) if snapshot.total else 0.0
    return data


# ---------------------------------------------------------------------------
# Routes: Jobs
# ---------------------------------------------------------------------------
@app.get("/api/jobs")
def list_jobs(
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=100),
    enrichment_status: str | None = None,
    status: str | None = "active",
    search: str | None = None,
    sort_by: str = "last_attempt_at",
    sort_dir: str = "desc",
):
    allowed_sort = {"id", "title", "last_attempt_at", "attempt_count", "enriched_at", "last_synced_at"}
    if sort_by not in allowed_sort:
        sort_by = "last_attempt_at"
    if sort_dir not in ("asc", "desc"):
        sort_dir = "desc"

    conditions: list[str] = []
    params: dict = {}
    if enrichment_status:
        conditions.append("enrichment_status = :enrichment_status")
        params["enrichment_status"] = enrichment_status
    if status:
        conditions.append("status = :status")
        params["status"] = status
    if search:
        conditions.append("title LIKE :search")
        params["search"] = f"%{search}%"

    where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
    params["limit"] = per_page
    params["offset"] = (page - 1) * per_page

    conn = get_db()
    try:
        total = conn.execute(f"SELECT COUNT(*) FROM job_postings{where}", params).fetchone()[0]
        rows = conn.execute(
            f"""SELECT id, title, source_url, status, enrichment_status, attempt_count,
                       last_attempt_at, enriched_at, enrichment_error, last_synced_at
                FROM job_postings{where}
                ORDER BY {sort_by} {sort_dir}, id
                LIMIT :limit OFFSET :offset""",
            params,
        ).fetchall()
        return {
            "items": [dict(r) for r in rows],
            "total": total,
            "page": page,
            "pages": (total + per_page - 1) // per_page,
        }
    finally:
        conn.close()


@app.get("/api/jobs/{job_id}")
def get_job(job_id: int):
    with get_store() as store:
        record = store.get(job_id)
        if record is None:
            return JSONResponse({"error": "Not found"}, 404)
        data = record.model_dump(mode="json")
        data.update(store.job_collections(job_id))
    return data


@app.post("/api/jobs/{job_id}/reset")
def reset_job(job_id: int):
    with JobStore(Path(DB_PATH)) as store:
        try:
            EnrichmentQueue(store).reset_to_pending(job_id)
        except JobNotFoundError:
            return JSONResponse({"error": "Not found"}, 404)
        except InvalidTransitionError as e:
            return JSONResponse({"error": str(e)}, 409)
        record = store.get(job_id)
    return {"id": job_id, "enrichment_status": record.enrichment_status.value, "attempt_count": record.attempt_count}


# ---------------------------------------------------------------------------
# Routes: Sync runs
# ---------------------------------------------------------------------------
@app.get("/api/runs")
def list_runs(limit: int = Query(20, ge=1, le=200)):
    conn = get_db()
    try:
        rows = conn.execute(
            "SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
    finally:
        conn.close()
    items = []
    for r in rows:
        data = dict(r)
        data["errors"] = json.loads(data.get("errors") or "[]")
        items.append(data)
    return {"items": items}
