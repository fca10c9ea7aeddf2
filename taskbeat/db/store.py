"""SQLite-backed job store for taskbeat.

Two tables:
    scheduled_jobs       job definitions + scheduling state (one row per job)
    scheduled_job_runs   append-only run history

The scheduler touches a job row with exactly two statements per tick:
the conditional lease acquire (``try_acquire_lease``) and the final state
commit (``commit_run``).  Both are single UPDATEs so SQLite's write lock
makes them atomic across processes sharing the database file.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from taskbeat.core.clock import to_iso, utcnow

# Columns callers may change through update_job()
_UPDATABLE = frozenset({
    "handler_id",
    "name",
    "description",
    "enabled",
    "schedule_type",
    "interval_sec",
    "cron_expression",
    "next_run_after",
    "config_json",
})


class JobStore:
    """SQLite job table — single source of truth for scheduling state."""

    def __init__(self, db_path: str = "data/taskbeat.db", busy_timeout_s: float = 5.0):
        self.db_path = db_path
        self.busy_timeout_s = busy_timeout_s
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"JobStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_s)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            conn.commit()

    def _migrate(self, conn) -> None:
        """Add columns missing in existing databases."""
        job_cols = {
            row[1] for row in conn.execute("PRAGMA table_info(scheduled_jobs)").fetchall()
        }
        for col, ddl in [
            ("failure_count", "INTEGER NOT NULL DEFAULT 0"),
            ("name", "TEXT"),
            ("description", "TEXT"),
        ]:
            if col not in job_cols:
                conn.execute(f"ALTER TABLE scheduled_jobs ADD COLUMN {col} {ddl}")

        run_cols = {
            row[1] for row in conn.execute("PRAGMA table_info(scheduled_job_runs)").fetchall()
        }
        if "trigger_type" not in run_cols:
            conn.execute(
                "ALTER TABLE scheduled_job_runs ADD COLUMN trigger_type TEXT NOT NULL DEFAULT 'auto'"
            )

    # ════════════════════════════════════════════════════════════
    # JOB DEFINITIONS
    # ════════════════════════════════════════════════════════════

    def add_job(
        self,
        task_id: str,
        handler_id: str,
        schedule_type: str = "interval",
        interval_sec: int | None = None,
        cron_expression: str | None = None,
        enabled: bool = True,
        config_json: str = "{}",
        name: str | None = None,
        description: str | None = None,
        next_run_after: datetime | None = None,
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO scheduled_jobs
                   (task_id, handler_id, name, description, enabled,
                    schedule_type, interval_sec, cron_expression,
                    next_run_after, config_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task_id, handler_id, name, description, int(enabled),
                    schedule_type, interval_sec, cron_expression,
                    to_iso(next_run_after), config_json,
                ),
            )
            conn.commit()

    def get_job(self, task_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_jobs WHERE task_id = ?", (task_id,)
            ).fetchone()
        return dict(row) if row else None

    def job_exists(self, task_id: str) -> bool:
        with self._get_conn() as conn:
            return (
                conn.execute(
                    "SELECT 1 FROM scheduled_jobs WHERE task_id = ?", (task_id,)
                ).fetchone()
                is not None
            )

    def list_jobs(
        self, task_id: str | None = None, enabled: bool | None = None
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM scheduled_jobs WHERE 1 = 1"
        params: list[Any] = []
        if task_id:
            sql += " AND task_id = ?"
            params.append(task_id)
        if enabled is not None:
            sql += " AND enabled = ?"
            params.append(int(enabled))
        sql += " ORDER BY task_id ASC"
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def update_job(self, task_id: str, **fields: Any) -> bool:
        """Overwrite definition columns. Returns True if the job exists."""
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Not updatable: {', '.join(sorted(unknown))}")
        if not fields:
            return self.job_exists(task_id)

        values = []
        for col, value in fields.items():
            if isinstance(value, datetime):
                value = to_iso(value)
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)

        sets = ", ".join(f"{col} = ?" for col in fields)
        with self._get_conn() as conn:
            cursor = conn.execute(
                f"UPDATE scheduled_jobs SET {sets}, updated_at = ? WHERE task_id = ?",
                (*values, to_iso(utcnow()), task_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def delete_job(self, task_id: str) -> bool:
        """Delete a job and its run history. Returns True if the job existed."""
        with self._get_conn() as conn:
            conn.execute("DELETE FROM scheduled_job_runs WHERE task_id = ?", (task_id,))
            cursor = conn.execute("DELETE FROM scheduled_jobs WHERE task_id = ?", (task_id,))
            conn.commit()
        return cursor.rowcount > 0

    def count_jobs(self) -> dict[str, int]:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(CASE WHEN enabled = 1 THEN 1 ELSE 0 END), 0) AS enabled
                   FROM scheduled_jobs"""
            ).fetchone()
        return {"total": row["total"], "enabled": row["enabled"]}

    # ════════════════════════════════════════════════════════════
    # SCHEDULING (due-scan, lease, commit)
    # ════════════════════════════════════════════════════════════

    def select_due(self, now: datetime) -> list[dict[str, Any]]:
        """Enabled jobs whose next_run_after is absent or not in the future.

        Leased jobs are included; the lease acquire decides who runs them.
        """
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM scheduled_jobs
                   WHERE enabled = 1
                     AND (next_run_after IS NULL OR next_run_after <= ?)""",
                (to_iso(now),),
            ).fetchall()
        return [dict(r) for r in rows]

    def try_acquire_lease(
        self,
        task_id: str,
        now: datetime,
        lock_until: datetime,
        require_enabled: bool = True,
    ) -> bool:
        """Set lock_until only if the job is lease-free. One atomic UPDATE."""
        sql = """UPDATE scheduled_jobs
                 SET lock_until = ?
                 WHERE task_id = ?
                   AND (lock_until IS NULL OR lock_until <= ?)"""
        if require_enabled:
            sql += " AND enabled = 1"
        with self._get_conn() as conn:
            cursor = conn.execute(sql, (to_iso(lock_until), task_id, to_iso(now)))
            conn.commit()
        return cursor.rowcount > 0

    def commit_run(
        self,
        task_id: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        next_run_after: datetime | None,
        enabled: bool,
        run_count_delta: int = 0,
        failure_count_delta: int = 0,
    ) -> None:
        """Clear the lease and write the outcome in one statement.

        Counters are incremented relative to the stored value, never
        read-then-written.
        """
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE scheduled_jobs
                   SET lock_until = NULL,
                       last_run_status = ?,
                       last_run_started_at = ?,
                       last_run_finished_at = ?,
                       next_run_after = ?,
                       enabled = ?,
                       run_count = run_count + ?,
                       failure_count = failure_count + ?,
                       updated_at = ?
                   WHERE task_id = ?""",
                (
                    status, to_iso(started_at), to_iso(finished_at),
                    to_iso(next_run_after), int(enabled),
                    run_count_delta, failure_count_delta,
                    to_iso(finished_at), task_id,
                ),
            )
            conn.commit()

    def commit_manual_run(
        self,
        task_id: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        failed: bool = False,
    ) -> None:
        """Release a manual-run lease; the schedule itself is left alone."""
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE scheduled_jobs
                   SET lock_until = NULL,
                       last_run_status = ?,
                       last_run_started_at = ?,
                       last_run_finished_at = ?,
                       run_count = run_count + 1,
                       failure_count = failure_count + ?,
                       updated_at = ?
                   WHERE task_id = ?""",
                (
                    status, to_iso(started_at), to_iso(finished_at),
                    int(failed), to_iso(finished_at), task_id,
                ),
            )
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # RUN HISTORY
    # ════════════════════════════════════════════════════════════

    def insert_run(
        self,
        task_id: str,
        status: str,
        started_at: datetime,
        finished_at: datetime | None = None,
        duration_ms: int | None = None,
        summary: str | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
        trigger_type: str = "auto",
    ) -> int:
        """Append one run record. Returns the row id."""
        details_json = json.dumps(details, ensure_ascii=False, default=str) if details else None
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO scheduled_job_runs
                   (task_id, status, trigger_type, started_at, finished_at,
                    duration_ms, summary, error_message, details_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task_id, status, trigger_type, to_iso(started_at),
                    to_iso(finished_at), duration_ms, summary, error_message,
                    details_json,
                ),
            )
            conn.commit()
            return cur.lastrowid

    def list_runs(self, task_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM scheduled_job_runs
                   WHERE task_id = ? ORDER BY started_at DESC, id DESC LIMIT ?""",
                (task_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def runs_since(self, since: datetime) -> list[dict[str, Any]]:
        """status + started_at of every run started at or after ``since``."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT status, started_at FROM scheduled_job_runs
                   WHERE started_at >= ? ORDER BY started_at ASC""",
                (to_iso(since),),
            ).fetchall()
        return [dict(r) for r in rows]

    def prune_runs(self, before: datetime) -> int:
        """Delete run history older than ``before``. Returns rows removed."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                "DELETE FROM scheduled_job_runs WHERE started_at < ?",
                (to_iso(before),),
            )
            conn.commit()
        return cursor.rowcount

    def count_runs(self) -> int:
        with self._get_conn() as conn:
            return conn.execute("SELECT COUNT(*) FROM scheduled_job_runs").fetchone()[0]


# ════════════════════════════════════════════════════════════
# SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Job definitions + scheduling state
CREATE TABLE IF NOT EXISTS scheduled_jobs (
    task_id TEXT PRIMARY KEY,
    handler_id TEXT,
    name TEXT,
    description TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    schedule_type TEXT NOT NULL DEFAULT 'interval',
    interval_sec INTEGER,
    cron_expression TEXT,
    run_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_run_status TEXT,
    last_run_started_at TEXT,
    last_run_finished_at TEXT,
    next_run_after TEXT,
    lock_until TEXT,
    config_json TEXT NOT NULL DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_next_run
    ON scheduled_jobs(enabled, next_run_after);

-- 2. Run history (append-only)
CREATE TABLE IF NOT EXISTS scheduled_job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    status TEXT NOT NULL,
    trigger_type TEXT NOT NULL DEFAULT 'auto',
    started_at TEXT NOT NULL,
    finished_at TEXT,
    duration_ms INTEGER,
    summary TEXT,
    error_message TEXT,
    details_json TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_job_runs_task
    ON scheduled_job_runs(task_id, started_at DESC);
"""
