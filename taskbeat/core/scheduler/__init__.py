"""Scheduler core — lease, schedule calculation, handlers, tick loop."""

from taskbeat.core.scheduler.calculator import compute, next_cron_occurrence
from taskbeat.core.scheduler.errors import (
    InvalidJobError,
    JobConflictError,
    JobNotFoundError,
    RunRecordError,
    SchedulerError,
)
from taskbeat.core.scheduler.lease import LeaseManager
from taskbeat.core.scheduler.loop import SchedulerLoop, run_due_scheduled_jobs
from taskbeat.core.scheduler.recorder import (
    NullRunRecorder,
    RunRecord,
    RunRecorder,
    StoreRunRecorder,
)
from taskbeat.core.scheduler.registry import (
    ConfigField,
    Handler,
    HandlerContext,
    HandlerRegistry,
    build_handler_registry,
)
from taskbeat.core.scheduler.service import JobService
from taskbeat.core.scheduler.types import (
    CronSchedule,
    IntervalSchedule,
    Job,
    RunStatus,
    ScheduleDecision,
    TickStats,
)

__all__ = [
    "ConfigField",
    "CronSchedule",
    "Handler",
    "HandlerContext",
    "HandlerRegistry",
    "IntervalSchedule",
    "InvalidJobError",
    "Job",
    "JobConflictError",
    "JobNotFoundError",
    "JobService",
    "LeaseManager",
    "NullRunRecorder",
    "RunRecord",
    "RunRecordError",
    "RunRecorder",
    "RunStatus",
    "ScheduleDecision",
    "SchedulerError",
    "SchedulerLoop",
    "StoreRunRecorder",
    "TickStats",
    "build_handler_registry",
    "compute",
    "next_cron_occurrence",
    "run_due_scheduled_jobs",
]
