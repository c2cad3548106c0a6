"""SQLite-backed job store: postings, enrichment state, child collections, sync logs."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .models import JobRecord, NormalizedJob

logger = logging.getLogger(__name__)

_DEFAULT_DB = Path(
    os.environ.get("JOB_SYNC_DB", str(Path.home() / ".local" / "share" / "job_sync" / "jobs.db"))
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS institutions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    location TEXT,
    website TEXT,
    type TEXT,
    description TEXT
);

CREATE TABLE IF NOT EXISTS departments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    location TEXT,
    contact_info TEXT,
    description TEXT,
    website TEXT,
    institution_id INTEGER NOT NULL REFERENCES institutions(id) ON DELETE CASCADE,
    UNIQUE(institution_id, name)
);

CREATE TABLE IF NOT EXISTS disciplines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    parent_id INTEGER REFERENCES disciplines(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS job_postings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description_html TEXT,
    description_text TEXT,
    instructions TEXT,
    qualifications TEXT,
    category TEXT,
    seniority_level TEXT,
    job_type TEXT,
    work_modality TEXT,
    salary_range TEXT,
    contract_type TEXT,
    duration_months INTEGER,
    renewable INTEGER,
    open_date TEXT,
    close_date TEXT,
    deadline_date TEXT,
    application_link TEXT,
    source_url TEXT NOT NULL UNIQUE,
    source_portal TEXT,
    funding_source TEXT,
    visa_sponsorship INTEGER,
    interview_process TEXT,
    is_self_financed INTEGER,
    is_part_time INTEGER,
    work_hours_per_week INTEGER,
    compensation_type TEXT,
    legacy_position_id INTEGER,
    department_id INTEGER REFERENCES departments(id) ON DELETE CASCADE,
    discipline_id INTEGER REFERENCES disciplines(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'active',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_synced_at TEXT NOT NULL,
    expires_at TEXT,
    enrichment_status TEXT NOT NULL DEFAULT 'pending',
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TEXT,
    enriched_at TEXT,
    enrichment_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_postings_status ON job_postings(status);
CREATE INDEX IF NOT EXISTS idx_job_postings_is_active ON job_postings(is_active);
CREATE INDEX IF NOT EXISTS idx_job_postings_last_synced_at ON job_postings(last_synced_at);
CREATE INDEX IF NOT EXISTS idx_job_postings_expires_at ON job_postings(expires_at);
CREATE INDEX IF NOT EXISTS idx_job_postings_enrichment_status ON job_postings(enrichment_status);
CREATE INDEX IF NOT EXISTS idx_job_postings_attempt_count ON job_postings(attempt_count);

CREATE TABLE IF NOT EXISTS keywords (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS job_keywords (
    job_posting_id INTEGER NOT NULL REFERENCES job_postings(id) ON DELETE CASCADE,
    keyword_id INTEGER NOT NULL REFERENCES keywords(id) ON DELETE CASCADE,
    PRIMARY KEY (job_posting_id, keyword_id)
);

CREATE TABLE IF NOT EXISTS application_requirements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_posting_id INTEGER NOT NULL REFERENCES job_postings(id) ON DELETE CASCADE,
    document_type TEXT,
    reference_letters_required INTEGER,
    platform TEXT,
    description TEXT
);

CREATE TABLE IF NOT EXISTS language_requirements (
    job_posting_id INTEGER NOT NULL REFERENCES job_postings(id) ON DELETE CASCADE,
    language TEXT NOT NULL,
    PRIMARY KEY (job_posting_id, language)
);

CREATE TABLE IF NOT EXISTS suitable_backgrounds (
    job_posting_id INTEGER NOT NULL REFERENCES job_postings(id) ON DELETE CASCADE,
    background TEXT NOT NULL,
    PRIMARY KEY (job_posting_id, background)
);

CREATE TABLE IF NOT EXISTS geo_locations (
    job_posting_id INTEGER PRIMARY KEY REFERENCES job_postings(id) ON DELETE CASCADE,
    lat REAL,
    lon REAL
);

CREATE TABLE IF NOT EXISTS contacts (
    job_posting_id INTEGER PRIMARY KEY REFERENCES job_postings(id) ON DELETE CASCADE,
    name TEXT,
    email TEXT,
    title TEXT
);

CREATE TABLE IF NOT EXISTS research_areas (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS job_posting_research_areas (
    job_posting_id INTEGER NOT NULL REFERENCES job_postings(id) ON DELETE CASCADE,
    research_area_id INTEGER NOT NULL REFERENCES research_areas(id) ON DELETE CASCADE,
    PRIMARY KEY (job_posting_id, research_area_id)
);

CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    jobs_fetched INTEGER NOT NULL DEFAULT 0,
    jobs_created INTEGER NOT NULL DEFAULT 0,
    jobs_updated INTEGER NOT NULL DEFAULT 0,
    jobs_expired INTEGER NOT NULL DEFAULT 0,
    jobs_removed INTEGER NOT NULL DEFAULT 0,
    errors TEXT,
    duration_ms INTEGER
);

CREATE INDEX IF NOT EXISTS idx_sync_logs_started_at ON sync_logs(started_at);
"""

# Columns callers may set through update_enrichment_fields / save_enrichment.
_UPDATABLE_COLUMNS = frozenset({
    "category", "work_modality", "contract_type", "duration_months", "renewable",
    "funding_source", "visa_sponsorship", "interview_process",
    "is_self_financed", "is_part_time", "work_hours_per_week", "compensation_type",
    "enrichment_status", "attempt_count", "last_attempt_at", "enriched_at",
    "enrichment_error", "status", "is_active",
})

_SYNC_COUNT_COLUMNS = frozenset({
    "jobs_fetched", "jobs_created", "jobs_updated", "jobs_expired", "jobs_removed",
})

# Deterministic columns written on every load; enriched columns are only
# written when a job is first created.
_LOAD_COLUMNS = (
    "title", "description_html", "description_text", "instructions", "qualifications",
    "seniority_level", "job_type", "salary_range", "open_date", "close_date",
    "deadline_date", "application_link", "source_portal", "legacy_position_id",
    "department_id", "discipline_id",
)
_CREATE_ONLY_COLUMNS = (
    "category", "work_modality", "contract_type", "duration_months", "renewable",
    "funding_source", "visa_sponsorship", "interview_process",
)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a timestamp as fixed-width UTC ISO text so SQL comparisons sort correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return int(value)
    return value


class JobStore:
    """Durable access to job postings. Holds no enrichment business rules.

    The connection runs in autocommit mode; every write goes through
    :meth:`transaction`, which takes SQLite's write lock up front
    (``BEGIN IMMEDIATE``) so a read-then-write step is atomic across
    connections and processes.
    """

    def __init__(self, db_path: Path | None = None, timeout: float = 30.0, readonly: bool = False):
        """Open (and create or migrate) the database.

        ``readonly`` opens an existing file with ``mode=ro`` and leaves the
        schema alone; writes then fail with ``sqlite3.OperationalError``.
        """
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB
        self.readonly = readonly
        self._lock = threading.RLock()
        if readonly:
            self._conn = sqlite3.connect(
                f"file:{self.db_path}?mode=ro",
                uri=True,
                timeout=timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            return

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self.db_path),
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)
        self._migrate()

    def _migrate(self) -> None:
        """Apply incremental schema migrations for existing DBs."""
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(job_postings)")}
        for column, ddl in (
            ("attempt_count", "INTEGER NOT NULL DEFAULT 0"),
            ("last_attempt_at", "TEXT"),
            ("enriched_at", "TEXT"),
            ("enrichment_error", "TEXT"),
        ):
            if column not in cols:
                self._conn.execute(f"ALTER TABLE job_postings ADD COLUMN {column} {ddl}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _fetchall(self, sql: str, params: Iterable[Any] | dict = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: Iterable[Any] | dict = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # --- Jobs ---

    def get(self, job_id: int) -> Optional[JobRecord]:
        row = self._fetchone(
            """SELECT j.*, i.name AS institution,
                      COALESCE(d.location, i.location) AS location
               FROM job_postings j
               LEFT JOIN departments d ON d.id = j.department_id
               LEFT JOIN institutions i ON i.id = d.institution_id
               WHERE j.id = ?""",
            (job_id,),
        )
        return JobRecord.model_validate(dict(row)) if row else None

    def get_by_url(self, source_url: str) -> Optional[JobRecord]:
        row = self._fetchone("SELECT id FROM job_postings WHERE source_url = ?", (source_url,))
        return self.get(row["id"]) if row else None

    def update_enrichment_fields(self, job_id: int, fields: dict[str, Any]) -> bool:
        """Write a partial set of columns. Returns False when the job does not exist."""
        with self.transaction() as conn:
            return self._update_job(conn, job_id, fields)

    def update_job_unless_status(
        self, job_id: int, fields: dict[str, Any], status: str
    ) -> Optional[str]:
        """Write ``fields`` unless the job's enrichment status is ``status``.

        The check and the write share one transaction. Returns the status the
        job had before the write, or None when the job does not exist.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT enrichment_status FROM job_postings WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                return None
            if fields:
                assignments = ", ".join(f"{col} = ?" for col in fields)
                conn.execute(
                    f"UPDATE job_postings SET {assignments} "
                    "WHERE id = ? AND enrichment_status != ?",
                    [_db_value(v) for v in fields.values()] + [job_id, status],
                )
            return row["enrichment_status"]

    def _update_job(self, conn: sqlite3.Connection, job_id: int, fields: dict[str, Any]) -> bool:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")
        if not fields:
            row = conn.execute("SELECT 1 FROM job_postings WHERE id = ?", (job_id,)).fetchone()
            return row is not None
        assignments = ", ".join(f"{col} = ?" for col in fields)
        cur = conn.execute(
            f"UPDATE job_postings SET {assignments} WHERE id = ?",
            [_db_value(v) for v in fields.values()] + [job_id],
        )
        return cur.rowcount > 0

    def claim_one(
        self,
        where: str,
        params: dict[str, Any],
        order_by: str,
        now: datetime,
    ) -> Optional[sqlite3.Row]:
        """Atomically pick the first job matching ``where`` and mark it in progress.

        Selection and transition run in one write transaction, so two callers
        can never claim the same row.
        """
        with self.transaction() as conn:
            row = conn.execute(
                f"SELECT id FROM job_postings WHERE {where} ORDER BY {order_by} LIMIT 1",
                params,
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """UPDATE job_postings
                   SET enrichment_status = 'in_progress',
                       last_attempt_at = ?,
                       attempt_count = attempt_count + 1
                   WHERE id = ?""",
                (to_iso(now), row["id"]),
            )
            return conn.execute(
                """SELECT id, title, enrichment_status, enrichment_error, enriched_at,
                          last_attempt_at, attempt_count
                   FROM job_postings WHERE id = ?""",
                (row["id"],),
            ).fetchone()

    def update_jobs_where(self, fields: dict[str, Any], where: str, params: dict[str, Any]) -> int:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")
        assignments = ", ".join(f"{col} = :set_{col}" for col in fields)
        bound = {f"set_{col}": _db_value(v) for col, v in fields.items()}
        bound.update(params)
        with self.transaction() as conn:
            cur = conn.execute(f"UPDATE job_postings SET {assignments} WHERE {where}", bound)
            return cur.rowcount

    def group_count_by_enrichment_status(self, active_only: bool = True) -> dict[str, int]:
        where = "WHERE status = 'active'" if active_only else ""
        rows = self._fetchall(
            f"SELECT enrichment_status, COUNT(*) AS n FROM job_postings {where} "
            "GROUP BY enrichment_status"
        )
        return {row["enrichment_status"]: row["n"] for row in rows}

    def list_enrichment_states(self, order_by: str, active_only: bool = True) -> list[dict]:
        where = "WHERE status = 'active'" if active_only else ""
        rows = self._fetchall(
            f"""SELECT id, title, enrichment_status, enrichment_error, enriched_at,
                       last_attempt_at, attempt_count
                FROM job_postings {where} ORDER BY {order_by}"""
        )
        return [dict(r) for r in rows]

    def job_count(self) -> int:
        row = self._fetchone("SELECT COUNT(*) FROM job_postings")
        return row[0] if row else 0

    # --- Enrichment content ---

    def save_enrichment(
        self,
        job_id: int,
        fields: dict[str, Any],
        collections: dict[str, Any],
    ) -> bool:
        """Write enriched columns and replace child collections in one transaction.

        ``collections`` keys: keywords, application_requirements,
        language_requirements, suitable_backgrounds, research_areas (replaced
        wholesale) and geo_location, contact (upserted).
        """
        with self.transaction() as conn:
            if not self._update_job(conn, job_id, fields):
                return False

            if "keywords" in collections:
                conn.execute("DELETE FROM job_keywords WHERE job_posting_id = ?", (job_id,))
                self._link_names(conn, job_id, "keywords", "job_keywords", "keyword_id",
                                 collections["keywords"])

            if "application_requirements" in collections:
                req = collections["application_requirements"]
                conn.execute(
                    "DELETE FROM application_requirements WHERE job_posting_id = ?", (job_id,)
                )
                documents = ", ".join(req["document_types"])
                conn.execute(
                    """INSERT INTO application_requirements
                       (job_posting_id, document_type, reference_letters_required, platform, description)
                       VALUES (?, ?, ?, ?, ?)""",
                    (job_id, documents, req["reference_letters_required"], req["platform"],
                     f"Documents: {documents}"),
                )

            if "language_requirements" in collections:
                conn.execute("DELETE FROM language_requirements WHERE job_posting_id = ?", (job_id,))
                conn.executemany(
                    "INSERT OR IGNORE INTO language_requirements (job_posting_id, language) VALUES (?, ?)",
                    [(job_id, lang) for lang in collections["language_requirements"]],
                )

            if "suitable_backgrounds" in collections:
                conn.execute("DELETE FROM suitable_backgrounds WHERE job_posting_id = ?", (job_id,))
                conn.executemany(
                    "INSERT OR IGNORE INTO suitable_backgrounds (job_posting_id, background) VALUES (?, ?)",
                    [(job_id, bg) for bg in collections["suitable_backgrounds"]],
                )

            if "geo_location" in collections:
                geo = collections["geo_location"]
                conn.execute(
                    """INSERT INTO geo_locations (job_posting_id, lat, lon) VALUES (?, ?, ?)
                       ON CONFLICT(job_posting_id) DO UPDATE SET lat = excluded.lat, lon = excluded.lon""",
                    (job_id, geo["lat"], geo["lon"]),
                )

            if "contact" in collections:
                contact = collections["contact"]
                conn.execute(
                    """INSERT INTO contacts (job_posting_id, name, email, title) VALUES (?, ?, ?, ?)
                       ON CONFLICT(job_posting_id) DO UPDATE SET
                           name = excluded.name, email = excluded.email, title = excluded.title""",
                    (job_id, contact["name"], contact["email"], contact["title"]),
                )

            if "research_areas" in collections:
                conn.execute(
                    "DELETE FROM job_posting_research_areas WHERE job_posting_id = ?", (job_id,)
                )
                self._link_names(conn, job_id, "research_areas", "job_posting_research_areas",
                                 "research_area_id", collections["research_areas"])
        return True

    @staticmethod
    def _link_names(
        conn: sqlite3.Connection,
        job_id: int,
        table: str,
        link_table: str,
        link_column: str,
        names: Iterable[str],
    ) -> None:
        for name in names:
            conn.execute(f"INSERT OR IGNORE INTO {table} (name) VALUES (?)", (name,))
            ref = conn.execute(f"SELECT id FROM {table} WHERE name = ?", (name,)).fetchone()
            conn.execute(
                f"INSERT OR IGNORE INTO {link_table} (job_posting_id, {link_column}) VALUES (?, ?)",
                (job_id, ref["id"]),
            )

    def job_collections(self, job_id: int) -> dict[str, Any]:
        """Read back child collections (for status views and tests)."""
        def names(sql: str) -> list[str]:
            return [r[0] for r in self._fetchall(sql, (job_id,))]

        req = self._fetchone(
            "SELECT document_type, reference_letters_required, platform "
            "FROM application_requirements WHERE job_posting_id = ?",
            (job_id,),
        )
        geo = self._fetchone("SELECT lat, lon FROM geo_locations WHERE job_posting_id = ?", (job_id,))
        contact = self._fetchone(
            "SELECT name, email, title FROM contacts WHERE job_posting_id = ?", (job_id,)
        )
        return {
            "keywords": names(
                "SELECT k.name FROM job_keywords jk JOIN keywords k ON k.id = jk.keyword_id "
                "WHERE jk.job_posting_id = ? ORDER BY k.name"
            ),
            "language_requirements": names(
                "SELECT language FROM language_requirements WHERE job_posting_id = ? ORDER BY language"
            ),
            "suitable_backgrounds": names(
                "SELECT background FROM suitable_backgrounds WHERE job_posting_id = ? ORDER BY background"
            ),
            "research_areas": names(
                "SELECT r.name FROM job_posting_research_areas jr "
                "JOIN research_areas r ON r.id = jr.research_area_id "
                "WHERE jr.job_posting_id = ? ORDER BY r.name"
            ),
            "application_requirements": dict(req) if req else None,
            "geo_location": dict(geo) if geo else None,
            "contact": dict(contact) if contact else None,
        }

    # --- Load ---

    def upsert_job(self, job: NormalizedJob) -> str:
        """Insert or refresh a posting keyed by source URL. Returns 'created' or 'updated'.

        Updates leave the enrichment state and enriched columns alone.
        """
        now = to_iso(_now())
        expires_at = to_iso(job.close_date or job.deadline_date)
        with self.transaction() as conn:
            department_id, discipline_id = self._resolve_references(conn, job)
            values = job.model_dump()
            values["department_id"] = department_id
            values["discipline_id"] = discipline_id
            load_values = [_db_value(values[c]) for c in _LOAD_COLUMNS]

            existing = conn.execute(
                "SELECT id FROM job_postings WHERE source_url = ?", (job.source_url,)
            ).fetchone()
            if existing:
                assignments = ", ".join(f"{c} = ?" for c in _LOAD_COLUMNS)
                conn.execute(
                    f"""UPDATE job_postings SET {assignments},
                           status = 'active', is_active = 1, last_synced_at = ?, expires_at = ?
                        WHERE id = ?""",
                    load_values + [now, expires_at, existing["id"]],
                )
                return "updated"

            columns = _LOAD_COLUMNS + _CREATE_ONLY_COLUMNS
            create_values = load_values + [_db_value(values[c]) for c in _CREATE_ONLY_COLUMNS]
            placeholders = ", ".join("?" for _ in columns)
            cur = conn.execute(
                f"""INSERT INTO job_postings
                    ({", ".join(columns)}, source_url, status, is_active, last_synced_at,
                     expires_at, enrichment_status, attempt_count)
                    VALUES ({placeholders}, ?, 'active', 1, ?, ?, 'pending', 0)""",
                create_values + [job.source_url, now, expires_at],
            )
            self._link_names(conn, cur.lastrowid, "keywords", "job_keywords", "keyword_id",
                             job.keywords)
            return "created"

    @staticmethod
    def _resolve_references(conn: sqlite3.Connection, job: NormalizedJob) -> tuple[int, Optional[int]]:
        conn.execute(
            """INSERT INTO institutions (name, location) VALUES (?, ?)
               ON CONFLICT(name) DO UPDATE SET location = COALESCE(excluded.location, location)""",
            (job.institution, job.location),
        )
        institution_id = conn.execute(
            "SELECT id FROM institutions WHERE name = ?", (job.institution,)
        ).fetchone()["id"]

        conn.execute(
            """INSERT INTO departments (name, location, institution_id) VALUES (?, ?, ?)
               ON CONFLICT(institution_id, name) DO UPDATE SET
                   location = COALESCE(excluded.location, location)""",
            (job.department, job.location, institution_id),
        )
        department_id = conn.execute(
            "SELECT id FROM departments WHERE institution_id = ? AND name = ?",
            (institution_id, job.department),
        ).fetchone()["id"]

        discipline_id = None
        if job.discipline:
            conn.execute("INSERT OR IGNORE INTO disciplines (name) VALUES (?)", (job.discipline,))
            discipline_id = conn.execute(
                "SELECT id FROM disciplines WHERE name = ?", (job.discipline,)
            ).fetchone()["id"]
        return department_id, discipline_id

    # --- Lifecycle ---

    def mark_expired_jobs(self, now: datetime | None = None) -> int:
        now_s = to_iso(now or _now())
        return self.update_jobs_where(
            {"status": "expired", "is_active": False},
            """status = 'active' AND (close_date < :now OR deadline_date < :now
                                      OR expires_at < :now)""",
            {"now": now_s},
        )

    def mark_removed_jobs(
        self,
        current_urls: Iterable[str],
        grace: timedelta = timedelta(hours=24),
        now: datetime | None = None,
    ) -> int:
        """Mark active jobs missing from the latest fetch and not synced within ``grace``."""
        cutoff = to_iso((now or _now()) - grace)
        return self.update_jobs_where(
            {"status": "removed", "is_active": False},
            """status = 'active' AND last_synced_at < :cutoff
               AND source_url NOT IN (SELECT value FROM json_each(:urls))""",
            {"cutoff": cutoff, "urls": json.dumps(sorted(set(current_urls)))},
        )

    def archive_old_jobs(self, older_than: timedelta = timedelta(days=180), now: datetime | None = None) -> int:
        cutoff = to_iso((now or _now()) - older_than)
        return self.update_jobs_where(
            {"is_active": False},
            "status IN ('expired', 'removed') AND is_active = 1 AND last_synced_at < :cutoff",
            {"cutoff": cutoff},
        )

    # --- Sync logs ---

    def start_sync(self) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO sync_logs (started_at, status) VALUES (?, 'running')",
                (to_iso(_now()),),
            )
            return cur.lastrowid

    def update_sync(self, sync_id: int, **counts: int) -> None:
        unknown = set(counts) - _SYNC_COUNT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown sync log columns: {sorted(unknown)}")
        if not counts:
            return
        assignments = ", ".join(f"{col} = ?" for col in counts)
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE sync_logs SET {assignments} WHERE id = ?",
                list(counts.values()) + [sync_id],
            )

    def finish_sync(self, sync_id: int, *, status: str, errors: list[str], **counts: int) -> None:
        self.update_sync(sync_id, **counts)
        self._close_sync(sync_id, status, errors)

    def fail_sync(self, sync_id: int, error: str) -> None:
        self._close_sync(sync_id, "failed", [error])

    def _close_sync(self, sync_id: int, status: str, errors: list[str]) -> None:
        now = _now()
        with self.transaction() as conn:
            started = conn.execute(
                "SELECT started_at FROM sync_logs WHERE id = ?", (sync_id,)
            ).fetchone()
            duration_ms = None
            if started:
                start_dt = datetime.fromisoformat(started["started_at"])
                duration_ms = int((now - start_dt).total_seconds() * 1000)
            conn.execute(
                """UPDATE sync_logs SET completed_at = ?, status = ?, errors = ?, duration_ms = ?
                   WHERE id = ?""",
                (to_iso(now), status, json.dumps(errors) if errors else None, duration_ms, sync_id),
            )

    def recent_syncs(self, limit: int = 20) -> list[dict]:
        rows = self._fetchall(
            "SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        )
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
