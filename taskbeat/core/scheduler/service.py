"""JobService — job management on top of the store.

Validation, task id generation, derived runtime state, manual runs and
run analytics.  The scheduler loop does not depend on this module.
"""

from __future__ import annotations

import json
import re
import time
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbeat.core.clock import from_iso, utcnow
from taskbeat.core.scheduler.calculator import next_cron_occurrence, preview_runs
from taskbeat.core.scheduler.errors import (
    InvalidJobError,
    JobConflictError,
    JobNotFoundError,
)
from taskbeat.core.scheduler.lease import DEFAULT_LEASE_SECONDS, LeaseManager
from taskbeat.core.scheduler.loop import execute_handler, parse_job_config, record_run
from taskbeat.core.scheduler.recorder import RunRecord, RunRecorder, StoreRunRecorder
from taskbeat.core.scheduler.registry import HandlerContext, HandlerRegistry
from taskbeat.core.scheduler.types import SCHEDULE_KINDS, Job, RunStatus

if TYPE_CHECKING:
    from taskbeat.db.store import JobStore

PREVIEW_RUNS = 5
MAX_RUNS_LIMIT = 200
MAX_WINDOW_HOURS = 7 * 24

_SCHEDULE_FIELDS = frozenset({"schedule_type", "interval_sec", "cron_expression"})
_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_]")
_RUN_STATUSES = tuple(s.value for s in RunStatus)


def runtime_state(job: Job, now: datetime) -> str:
    """disabled | running | scheduled | pending | idle"""
    if not job.enabled:
        return "disabled"
    if job.is_leased(now):
        return "running"
    if job.next_run_after is None:
        return "idle"
    if now < job.next_run_after:
        return "scheduled"
    return "pending"


class JobService:
    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        recorder: RunRecorder | None = None,
        lease_duration_s: int = DEFAULT_LEASE_SECONDS,
        timezone: str = "UTC",
    ):
        self.store = store
        self.registry = registry
        self.recorder = recorder if recorder is not None else StoreRunRecorder(store)
        self.leases = LeaseManager(store, lease_duration_s)
        self.timezone = timezone

    # ════════════════════════════════════════════════════════════
    # CRUD
    # ════════════════════════════════════════════════════════════

    def create_job(
        self,
        handler_id: str,
        *,
        task_id: str | None = None,
        name: str | None = None,
        description: str | None = None,
        schedule_type: str = "interval",
        interval_sec: int | None = None,
        cron_expression: str | None = None,
        enabled: bool = True,
        config: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if not isinstance(handler_id, str) or not handler_id.strip():
            raise InvalidJobError("handler_id is required")
        handler_id = handler_id.strip()
        schedule_type, interval_sec, cron_expression = self._validate_schedule(
            schedule_type, interval_sec, cron_expression
        )
        config_json = _dump_config(config)

        if not task_id:
            normalized = _UNSAFE_ID_CHARS.sub("_", handler_id).lower() or "job"
            task_id = f"{normalized}_{uuid.uuid4().hex[:8]}"
        if self.store.job_exists(task_id):
            raise JobConflictError(f"Job already exists: {task_id}")

        now = now or utcnow()
        next_run = (
            self._first_run(schedule_type, interval_sec, cron_expression, now)
            if enabled else None
        )
        self.store.add_job(
            task_id,
            handler_id,
            schedule_type=schedule_type,
            interval_sec=interval_sec,
            cron_expression=cron_expression,
            enabled=enabled,
            config_json=config_json,
            name=name,
            description=description,
            next_run_after=next_run,
        )
        if handler_id not in self.registry:
            logger.warning(f"Job {task_id} created for unregistered handler {handler_id!r}")
        logger.info(f"Job created: {task_id} ({handler_id}, {schedule_type})")
        return self.get_job(task_id, now=now)

    def get_job(self, task_id: str, now: datetime | None = None) -> dict[str, Any]:
        row = self.store.get_job(task_id)
        if row is None:
            raise JobNotFoundError(f"Job not found: {task_id}")
        return self._view(row, now or utcnow())

    def list_jobs(
        self, task_id: str | None = None, enabled: bool | None = None
    ) -> list[dict[str, Any]]:
        now = utcnow()
        return [self._view(row, now) for row in self.store.list_jobs(task_id, enabled)]

    def update_job(
        self, task_id: str, now: datetime | None = None, **changes: Any
    ) -> dict[str, Any]:
        """Partial update. Re-seeds next_run_after on schedule change or re-enable."""
        row = self.store.get_job(task_id)
        if row is None:
            raise JobNotFoundError(f"Job not found: {task_id}")

        allowed = _SCHEDULE_FIELDS | {"enabled", "config", "name", "description", "handler_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidJobError(f"Unknown fields: {', '.join(sorted(unknown))}")

        fields: dict[str, Any] = {}
        for key in ("name", "description"):
            if key in changes:
                fields[key] = changes[key]
        if "handler_id" in changes:
            handler_id = changes["handler_id"]
            if not isinstance(handler_id, str) or not handler_id.strip():
                raise InvalidJobError("handler_id is required")
            fields["handler_id"] = handler_id.strip()
        if "config" in changes:
            fields["config_json"] = _dump_config(changes["config"])

        schedule_changed = bool(_SCHEDULE_FIELDS & set(changes))
        schedule_type, interval_sec, cron_expression = (
            changes.get("schedule_type", row["schedule_type"]),
            changes.get("interval_sec", row["interval_sec"]),
            changes.get("cron_expression", row["cron_expression"]),
        )
        if schedule_changed:
            schedule_type, interval_sec, cron_expression = self._validate_schedule(
                schedule_type, interval_sec, cron_expression
            )
            fields.update(
                schedule_type=schedule_type,
                interval_sec=interval_sec,
                cron_expression=cron_expression,
            )

        was_enabled = bool(row["enabled"])
        enabled = bool(changes.get("enabled", was_enabled))
        if "enabled" in changes:
            fields["enabled"] = enabled

        now = now or utcnow()
        if enabled and (schedule_changed or not was_enabled):
            if not schedule_changed:
                # Stored schedule must still be valid to re-enable
                schedule_type, interval_sec, cron_expression = self._validate_schedule(
                    schedule_type, interval_sec, cron_expression
                )
            fields["next_run_after"] = self._first_run(
                schedule_type, interval_sec, cron_expression, now
            )
        elif not enabled and "enabled" in changes:
            fields["next_run_after"] = None

        self.store.update_job(task_id, **fields)
        logger.info(f"Job updated: {task_id} ({', '.join(sorted(changes)) or 'no changes'})")
        return self.get_job(task_id, now=now)

    def delete_job(self, task_id: str) -> None:
        if not self.store.delete_job(task_id):
            raise JobNotFoundError(f"Job not found: {task_id}")
        logger.info(f"Job deleted: {task_id}")

    # ════════════════════════════════════════════════════════════
    # MANUAL RUN
    # ════════════════════════════════════════════════════════════

    async def run_now(self, task_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Execute a job once, outside its schedule.

        Takes the same lease as the scheduler, so a manual run never overlaps
        a scheduled one.  next_run_after and enabled are left untouched.
        """
        row = self.store.get_job(task_id)
        if row is None:
            raise JobNotFoundError(f"Job not found: {task_id}")
        job = Job.from_row(row)
        handler = self.registry.lookup(job.handler_id)
        if handler is None:
            raise InvalidJobError(f"No handler registered for {job.handler_id!r}")

        now = now or utcnow()
        if not self.leases.acquire(task_id, now, require_enabled=False):
            raise JobConflictError(f"Job is already running: {task_id}")

        started_at = utcnow()
        start = time.monotonic()
        ctx = HandlerContext(task_id=task_id, now=now, config=parse_job_config(job))
        outcome = await execute_handler(handler, ctx)
        finished_at = utcnow()
        self.store.commit_manual_run(
            task_id,
            outcome.status.value,
            started_at,
            finished_at,
            failed=outcome.status is RunStatus.FAILURE,
        )

        entry = RunRecord(
            task_id=task_id,
            status=outcome.status,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - start) * 1000),
            summary=outcome.summary,
            error_message=outcome.error,
            details=outcome.details,
            trigger_type="manual",
        )
        record_run(self.recorder, entry)

        logger.info(f"Manual run {task_id}: {outcome.status.value} ({entry.duration_ms}ms)")
        return {
            "task_id": task_id,
            "status": outcome.status.value,
            "duration_ms": entry.duration_ms,
            "summary": outcome.summary,
            "error_message": outcome.error,
        }

    # ════════════════════════════════════════════════════════════
    # RUN HISTORY
    # ════════════════════════════════════════════════════════════

    def list_runs(self, task_id: str, limit: int = 50) -> list[dict[str, Any]]:
        limit = min(max(int(limit), 1), MAX_RUNS_LIMIT)
        runs = self.store.list_runs(task_id, limit)
        for run in runs:
            raw = run.pop("details_json", None)
            run["details"] = json.loads(raw) if raw else None
        return runs

    def hourly_analytics(
        self, window_hours: int = 24, now: datetime | None = None
    ) -> dict[str, Any]:
        """Run counts per hour for the last ``window_hours`` hours (inclusive of now)."""
        if not window_hours or window_hours <= 0:
            window_hours = 24
        window_hours = min(max(int(window_hours), 1), MAX_WINDOW_HOURS)

        now = now or utcnow()
        end_hour = now.replace(minute=0, second=0, microsecond=0)
        window_start = end_hour - timedelta(hours=window_hours - 1)

        buckets = [
            {
                "hour": window_start + timedelta(hours=i),
                "total": 0,
                "success": 0,
                "failure": 0,
                "skipped": 0,
            }
            for i in range(window_hours)
        ]
        for run in self.store.runs_since(window_start):
            started = from_iso(run["started_at"])
            index = int((started - window_start).total_seconds() // 3600)
            if not 0 <= index < window_hours:
                continue
            bucket = buckets[index]
            bucket["total"] += 1
            if run["status"] in _RUN_STATUSES:
                bucket[run["status"]] += 1

        return {"window_hours": window_hours, "buckets": buckets}

    # ════════════════════════════════════════════════════════════
    # INTERNALS
    # ════════════════════════════════════════════════════════════

    def _view(self, row: dict[str, Any], now: datetime) -> dict[str, Any]:
        job = Job.from_row(row)
        view = job.model_dump(exclude={"schedule", "config_json"})
        view.update(
            schedule_type=row.get("schedule_type"),
            interval_sec=row.get("interval_sec"),
            cron_expression=row.get("cron_expression"),
            last_run_status=job.last_run_status.value if job.last_run_status else None,
            config=parse_job_config(job),
            runtime_state=runtime_state(job, now),
            handler_exists=job.handler_id in self.registry,
            preview_next_runs=preview_runs(job, PREVIEW_RUNS, self.timezone),
        )
        return view

    def _validate_schedule(
        self, schedule_type: str | None, interval_sec: Any, cron_expression: str | None
    ) -> tuple[str, int | None, str | None]:
        kind = (schedule_type or "interval").strip().lower()
        if kind not in SCHEDULE_KINDS:
            raise InvalidJobError(
                f"schedule_type must be one of {', '.join(SCHEDULE_KINDS)} (got {schedule_type!r})"
            )

        if kind == "interval":
            try:
                seconds = int(interval_sec)
            except (TypeError, ValueError):
                raise InvalidJobError("interval_sec must be a positive integer") from None
            if seconds <= 0:
                raise InvalidJobError("interval_sec must be a positive integer")
            return kind, seconds, None

        expression = (cron_expression or "").strip()
        if not expression:
            raise InvalidJobError("cron_expression is required for cron jobs")
        try:
            next_cron_occurrence(expression, utcnow(), self.timezone)
        except ValueError as e:
            raise InvalidJobError(f"Invalid cron_expression {expression!r}: {e}") from e
        return kind, None, expression

    def _first_run(
        self,
        schedule_type: str,
        interval_sec: int | None,
        cron_expression: str | None,
        now: datetime,
    ) -> datetime:
        if schedule_type == "cron":
            return next_cron_occurrence(cron_expression, now, self.timezone)
        return now + timedelta(seconds=interval_sec)


def _dump_config(config: Any) -> str:
    if config is None:
        return "{}"
    if not isinstance(config, dict):
        raise InvalidJobError("config must be a mapping")
    try:
        return json.dumps(config, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise InvalidJobError(f"config is not JSON-serializable: {e}") from e
