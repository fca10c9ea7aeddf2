"""Scheduler types — job model, schedule union, outcomes, tick stats."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field

from taskbeat.core.clock import from_iso


class RunStatus(str, Enum):
    """Outcome of one execution attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class IntervalSchedule(BaseModel):
    kind: Literal["interval"] = "interval"
    interval_sec: int


class CronSchedule(BaseModel):
    kind: Literal["cron"] = "cron"
    expression: str | None = None  # 5-field crontab, e.g. "0 2 * * *"


Schedule = Annotated[Union[IntervalSchedule, CronSchedule], Field(discriminator="kind")]

SCHEDULE_KINDS = ("interval", "cron")


class Job(BaseModel):
    """Scheduled job — mirrors one scheduled_jobs row.

    ``schedule`` is None when the stored schedule_type is not one of
    SCHEDULE_KINDS; the calculator disables such jobs.
    """

    task_id: str
    handler_id: str | None = None
    name: str | None = None
    description: str | None = None
    enabled: bool = True
    schedule: Schedule | None = None
    run_count: int = 0
    failure_count: int = 0
    next_run_after: datetime | None = None
    lock_until: datetime | None = None
    last_run_status: RunStatus | None = None
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    config_json: str = "{}"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Job:
        kind = (row.get("schedule_type") or "interval").strip().lower()
        schedule: IntervalSchedule | CronSchedule | None
        if kind == "interval":
            try:
                interval_sec = int(row.get("interval_sec") or 0)
            except (TypeError, ValueError, OverflowError):
                logger.warning(
                    f"Job {row.get('task_id')} has unusable interval_sec {row.get('interval_sec')!r}"
                )
                interval_sec = 0
            schedule = IntervalSchedule(interval_sec=interval_sec)
        elif kind == "cron":
            schedule = CronSchedule(expression=row.get("cron_expression") or None)
        else:
            logger.warning(f"Job {row.get('task_id')} has unknown schedule_type {kind!r}")
            schedule = None

        status = row.get("last_run_status")
        try:
            last_status = RunStatus(status) if status else None
        except ValueError:
            last_status = None

        return cls(
            task_id=row["task_id"],
            handler_id=row.get("handler_id"),
            name=row.get("name"),
            description=row.get("description"),
            enabled=bool(row.get("enabled")),
            schedule=schedule,
            run_count=row.get("run_count") or 0,
            failure_count=row.get("failure_count") or 0,
            next_run_after=from_iso(row.get("next_run_after")),
            lock_until=from_iso(row.get("lock_until")),
            last_run_status=last_status,
            last_run_started_at=from_iso(row.get("last_run_started_at")),
            last_run_finished_at=from_iso(row.get("last_run_finished_at")),
            config_json=row.get("config_json") or "{}",
        )

    def is_leased(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def is_due(self, now: datetime) -> bool:
        return self.enabled and (self.next_run_after is None or self.next_run_after <= now)


@dataclass(frozen=True)
class ScheduleDecision:
    """Result of compute(): new schedule state + counter deltas."""

    next_run_after: datetime | None
    enabled: bool
    run_count_delta: int = 0
    failure_count_delta: int = 0
    reason: str | None = None  # set when the decision disables the job


@dataclass
class TickStats:
    due_count: int = 0
    executed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0

    def count(self, status: RunStatus) -> None:
        if status is RunStatus.SUCCESS:
            self.executed_count += 1
        elif status is RunStatus.FAILURE:
            self.failed_count += 1
        else:
            self.skipped_count += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
