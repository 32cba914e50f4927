from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from jobimport.core.errors import RunNotFoundError, RunStateError
from jobimport.core.models import (
    ApplyResult,
    BatchOutcome,
    CanonicalJob,
    FailureReason,
    ImportRun,
    JobRecord,
    RunStatus,
    Source,
    utc_now,
)

PROCESSED = "new_count + updated_count + failed_count"


class JobRepository:
    """SQLite store for sources, jobs and import runs.

    Every mutating method runs in a single transaction under the connection
    lock. Run counters are only ever changed through conditional ``UPDATE``
    statements, never by reading a value and writing it back.
    """

    def __init__(self, db_path: str = "data/jobimport.db") -> None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self.lock:
            self.conn.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL UNIQUE,
                    display_name TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    last_fetched_at TEXT,
                    fetch_interval_seconds INTEGER NOT NULL DEFAULT 3600,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL,
                    source TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    company TEXT,
                    location TEXT,
                    category TEXT,
                    job_type TEXT,
                    salary TEXT,
                    url TEXT,
                    published_at TEXT,
                    raw_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (external_id, source)
                );
                CREATE TABLE IF NOT EXISTS import_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_url TEXT NOT NULL,
                    source_name TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    total_fetched INTEGER,
                    total_imported INTEGER NOT NULL DEFAULT 0,
                    new_count INTEGER NOT NULL DEFAULT 0,
                    updated_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    processing_time_ms INTEGER
                );
                CREATE INDEX IF NOT EXISTS idx_import_runs_started ON import_runs(started_at);
                CREATE TABLE IF NOT EXISTS run_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL,
                    job_ref TEXT,
                    reason TEXT,
                    detail TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_run_failures_run ON run_failures(run_id);
                CREATE TABLE IF NOT EXISTS applied_batches (
                    run_id INTEGER NOT NULL,
                    batch_index INTEGER NOT NULL,
                    applied_at TEXT NOT NULL,
                    PRIMARY KEY (run_id, batch_index)
                );
                """
            )
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    # sources

    def ensure_source(self, url: str, display_name: str, active: bool = True, fetch_interval_seconds: int = 3600) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO sources(url, display_name, active, fetch_interval_seconds, created_at)
                VALUES (?,?,?,?,?)
                ON CONFLICT(url) DO NOTHING
                """,
                (url, display_name, int(active), fetch_interval_seconds, utc_now()),
            )
            return cur.rowcount == 1

    def add_source(self, url: str, display_name: str, active: bool = True, fetch_interval_seconds: int = 3600) -> Source:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO sources(url, display_name, active, fetch_interval_seconds, created_at) VALUES (?,?,?,?,?)",
                (url, display_name, int(active), fetch_interval_seconds, utc_now()),
            )
        return self.get_source(int(cur.lastrowid))

    def get_source(self, source_id: int) -> Source:
        with self.lock:
            row = self.conn.execute("SELECT * FROM sources WHERE id=?", (source_id,)).fetchone()
        if row is None:
            raise KeyError(f"Source not found: {source_id}")
        return self._source(row)

    def list_sources(self, active_only: bool = False) -> list[Source]:
        query = "SELECT * FROM sources"
        if active_only:
            query += " WHERE active=1"
        with self.lock:
            rows = self.conn.execute(query + " ORDER BY id").fetchall()
        return [self._source(row) for row in rows]

    def set_source_active(self, source_id: int, active: bool) -> None:
        with self.lock, self.conn:
            self.conn.execute("UPDATE sources SET active=? WHERE id=?", (int(active), source_id))

    def delete_source(self, source_id: int) -> bool:
        with self.lock, self.conn:
            return self.conn.execute("DELETE FROM sources WHERE id=?", (source_id,)).rowcount == 1

    def mark_source_fetched(self, source_id: int, fetched_at: str | None = None) -> None:
        with self.lock, self.conn:
            self.conn.execute("UPDATE sources SET last_fetched_at=? WHERE id=?", (fetched_at or utc_now(), source_id))

    @staticmethod
    def _source(row: sqlite3.Row) -> Source:
        return Source(
            id=row["id"],
            url=row["url"],
            display_name=row["display_name"] or row["url"],
            active=bool(row["active"]),
            last_fetched_at=row["last_fetched_at"],
            fetch_interval_seconds=row["fetch_interval_seconds"],
        )

    # jobs

    def upsert_job(self, job: CanonicalJob, source: str) -> bool:
        """Insert or fully replace the job keyed by (external_id, source); True when inserted."""
        now = utc_now()
        fields = (
            job.title,
            job.description,
            job.company,
            job.location,
            job.category,
            job.job_type,
            job.salary,
            job.url,
            job.published_at,
            json.dumps(job.raw, default=str),
        )
        with self.lock, self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO jobs(external_id, source, title, description, company, location, category,
                                 job_type, salary, url, published_at, raw_json, created_at, updated_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(external_id, source) DO NOTHING
                """,
                (job.external_id, source, *fields, now, now),
            )
            if cur.rowcount == 1:
                return True
            self.conn.execute(
                """
                UPDATE jobs SET title=?, description=?, company=?, location=?, category=?, job_type=?,
                                salary=?, url=?, published_at=?, raw_json=?, updated_at=?
                WHERE external_id=? AND source=?
                """,
                (*fields, now, job.external_id, source),
            )
            return False

    def list_jobs(self, source: str | None = None) -> list[JobRecord]:
        query = "SELECT * FROM jobs"
        params: tuple[Any, ...] = ()
        if source is not None:
            query += " WHERE source=?"
            params = (source,)
        with self.lock:
            rows = self.conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            JobRecord(
                id=row["id"],
                external_id=row["external_id"],
                source=row["source"],
                title=row["title"],
                description=row["description"],
                company=row["company"],
                location=row["location"],
                category=row["category"],
                job_type=row["job_type"],
                salary=row["salary"],
                url=row["url"],
                published_at=row["published_at"],
                raw=json.loads(row["raw_json"] or "null"),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    # import runs

    def create_run(self, source_url: str, source_name: str, status: RunStatus = RunStatus.PENDING) -> ImportRun:
        started = utc_now()
        with self.lock, self.conn:
            cur = self.conn.execute(
                "INSERT INTO import_runs(source_url, source_name, started_at, status) VALUES (?,?,?,?)",
                (source_url, source_name, started, status.value),
            )
        return ImportRun(id=int(cur.lastrowid), source_url=source_url, source_name=source_name, started_at=started, status=status)

    def set_total_fetched(self, run_id: int, count: int) -> None:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "UPDATE import_runs SET total_fetched=?, status=? WHERE id=? AND total_fetched IS NULL AND status=?",
                (count, RunStatus.PROCESSING.value, run_id, RunStatus.PENDING.value),
            )
            if cur.rowcount == 1:
                return
            row = self.conn.execute("SELECT total_fetched, status FROM import_runs WHERE id=?", (run_id,)).fetchone()
        if row is None:
            raise RunNotFoundError(f"Import run not found: {run_id}")
        if row["total_fetched"] == count:
            return
        raise RunStateError(
            f"Run {run_id} cannot record {count} fetched jobs (total_fetched={row['total_fetched']}, status={row['status']})"
        )

    def increment_run(self, run_id: int, outcome: BatchOutcome, batch_index: int | None = None) -> ApplyResult:
        """Add one batch outcome to the run counters and close the run when it is fully accounted for.

        With a ``batch_index`` the outcome is applied at most once per run:
        a redelivered batch finds its key in ``applied_batches`` and is
        reported as ``DUPLICATE`` without touching the counters.
        """
        with self.lock, self.conn:
            if batch_index is not None:
                cur = self.conn.execute(
                    """
                    INSERT INTO applied_batches(run_id, batch_index, applied_at) VALUES (?,?,?)
                    ON CONFLICT(run_id, batch_index) DO NOTHING
                    """,
                    (run_id, batch_index, utc_now()),
                )
                if cur.rowcount == 0:
                    return ApplyResult.DUPLICATE
            cur = self.conn.execute(
                f"""
                UPDATE import_runs SET
                    new_count = new_count + ?,
                    updated_count = updated_count + ?,
                    failed_count = failed_count + ?,
                    total_imported = total_imported + ?
                WHERE id=? AND status=? AND total_fetched IS NOT NULL
                  AND {PROCESSED} + ? <= total_fetched
                """,
                (
                    outcome.new_count,
                    outcome.updated_count,
                    outcome.failed_count,
                    outcome.new_count + outcome.updated_count,
                    run_id,
                    RunStatus.PROCESSING.value,
                    outcome.total,
                ),
            )
            if cur.rowcount == 0:
                row = self.conn.execute("SELECT status FROM import_runs WHERE id=?", (run_id,)).fetchone()
                if row is None:
                    raise RunNotFoundError(f"Import run not found: {run_id}")
                if batch_index is not None:
                    self.conn.execute(
                        "DELETE FROM applied_batches WHERE run_id=? AND batch_index=?", (run_id, batch_index)
                    )
                if row["status"] == RunStatus.PROCESSING.value:
                    return ApplyResult.OVERFLOW
                return ApplyResult.DISCARDED

            self._append_failures(run_id, outcome.failure_reasons)
            if self._complete_if_accounted(run_id):
                return ApplyResult.COMPLETED
            return ApplyResult.APPLIED

    def _complete_if_accounted(self, run_id: int) -> bool:
        cur = self.conn.execute(
            f"""
            UPDATE import_runs SET status=?, finished_at=?
            WHERE id=? AND status=? AND total_fetched > 0 AND {PROCESSED} >= total_fetched
            """,
            (RunStatus.COMPLETED.value, utc_now(), run_id, RunStatus.PROCESSING.value),
        )
        return cur.rowcount == 1

    def complete_empty_run(self, run_id: int) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "UPDATE import_runs SET status=?, finished_at=? WHERE id=? AND status=? AND total_fetched=0",
                (RunStatus.COMPLETED.value, utc_now(), run_id, RunStatus.PROCESSING.value),
            )
            return cur.rowcount == 1

    def fail_run(self, run_id: int, reason: FailureReason) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "UPDATE import_runs SET status=?, finished_at=? WHERE id=? AND status IN (?, ?)",
                (
                    RunStatus.FAILED.value,
                    utc_now(),
                    run_id,
                    RunStatus.PENDING.value,
                    RunStatus.PROCESSING.value,
                ),
            )
            if cur.rowcount == 1:
                self._append_failures(run_id, [reason])
                return True
            exists = self.conn.execute("SELECT 1 FROM import_runs WHERE id=?", (run_id,)).fetchone()
        if exists is None:
            raise RunNotFoundError(f"Import run not found: {run_id}")
        return False

    def set_processing_time(self, run_id: int, ms: int) -> None:
        with self.lock, self.conn:
            self.conn.execute("UPDATE import_runs SET processing_time_ms=? WHERE id=?", (ms, run_id))

    def _append_failures(self, run_id: int, reasons: list[FailureReason]) -> None:
        if not reasons:
            return
        self.conn.executemany(
            "INSERT INTO run_failures(run_id, job_ref, reason, detail) VALUES (?,?,?,?)",
            [(run_id, r.job_ref, r.reason, r.detail) for r in reasons],
        )

    def get_run(self, run_id: int) -> ImportRun:
        with self.lock:
            row = self.conn.execute("SELECT * FROM import_runs WHERE id=?", (run_id,)).fetchone()
            if row is None:
                raise RunNotFoundError(f"Import run not found: {run_id}")
            return self._run(row, self.list_failures(run_id))

    def list_runs(self, limit: int | None = None, status: RunStatus | None = None) -> list[ImportRun]:
        query = "SELECT * FROM import_runs"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status=?"
            params.append(status.value)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
            return [self._run(row, self.list_failures(row["id"])) for row in rows]

    def list_failures(self, run_id: int) -> list[FailureReason]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT job_ref, reason, detail FROM run_failures WHERE run_id=? ORDER BY id", (run_id,)
            ).fetchall()
        return [FailureReason(job_ref=r["job_ref"], reason=r["reason"], detail=r["detail"] or "") for r in rows]

    def run_summary(self) -> dict[str, int]:
        with self.lock:
            row = self.conn.execute(
                """
                SELECT COUNT(*) AS total_imports,
                       COALESCE(SUM(total_fetched), 0) AS total_fetched,
                       COALESCE(SUM(total_imported), 0) AS total_imported,
                       COALESCE(SUM(new_count), 0) AS total_new,
                       COALESCE(SUM(updated_count), 0) AS total_updated,
                       COALESCE(SUM(failed_count), 0) AS total_failed
                FROM import_runs
                """
            ).fetchone()
        return dict(row)

    @staticmethod
    def _run(row: sqlite3.Row, failures: list[FailureReason]) -> ImportRun:
        return ImportRun(
            id=row["id"],
            source_url=row["source_url"],
            source_name=row["source_name"] or row["source_url"],
            started_at=row["started_at"],
            status=RunStatus(row["status"]),
            total_fetched=row["total_fetched"],
            total_imported=row["total_imported"],
            new_count=row["new_count"],
            updated_count=row["updated_count"],
            failed_count=row["failed_count"],
            failure_reasons=failures,
            finished_at=row["finished_at"],
            processing_time_ms=row["processing_time_ms"],
        )
