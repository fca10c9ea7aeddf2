"""Run recorders — best-effort run history.

Recording is a separate error channel: implementations raise only
RunRecordError, and the scheduler logs and drops it.  A failed write here
never undoes the job's state commit.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger

from taskbeat.core.scheduler.errors import RunRecordError
from taskbeat.core.scheduler.types import RunStatus

if TYPE_CHECKING:
    from taskbeat.db.store import JobStore


@dataclass(frozen=True)
class RunRecord:
    task_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    summary: str | None = None
    error_message: str | None = None
    details: dict[str, Any] | None = None
    trigger_type: str = "auto"  # auto | manual


class RunRecorder(Protocol):
    def record(self, entry: RunRecord) -> None:
        """Persist one run. Raises RunRecordError on failure."""
        ...


class StoreRunRecorder:
    """Writes run records to the scheduled_job_runs table."""

    def __init__(self, store: JobStore):
        self.store = store

    def record(self, entry: RunRecord) -> None:
        try:
            self.store.insert_run(
                entry.task_id,
                entry.status.value,
                entry.started_at,
                finished_at=entry.finished_at,
                duration_ms=entry.duration_ms,
                summary=entry.summary,
                error_message=entry.error_message,
                details=entry.details,
                trigger_type=entry.trigger_type,
            )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise RunRecordError(f"Failed to record run for {entry.task_id}: {e}") from e


class NullRunRecorder:
    """Discards run records (scheduler.record_runs = false)."""

    def record(self, entry: RunRecord) -> None:
        logger.debug(f"Run history disabled, dropping {entry.status.value} for {entry.task_id}")
