"""Schedule calculator — next run time, enabled flag and counter deltas.

``compute`` is pure: the same (job, outcome, now, timezone) always yields the
same ScheduleDecision.  Cron evaluation is delegated to APScheduler's
CronTrigger; nothing here parses crontab fields itself.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone as dt_timezone

from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from taskbeat.core.clock import from_iso
from taskbeat.core.scheduler.types import (
    CronSchedule,
    IntervalSchedule,
    Job,
    RunStatus,
    ScheduleDecision,
)

_ATTEMPTED = frozenset({RunStatus.SUCCESS, RunStatus.FAILURE})


def next_cron_occurrence(
    expression: str, now: datetime, timezone: str = "UTC"
) -> datetime:
    """First fire time strictly after ``now`` (UTC). Raises ValueError.

    A naive ``now`` is taken as UTC, like every stored timestamp.
    """
    if not expression or not isinstance(expression, str):
        raise ValueError("cron expression is empty")
    now = from_iso(now)
    trigger = CronTrigger.from_crontab(expression, timezone=timezone)
    # Passing now as the previous fire time makes the trigger skip now itself
    fire_time = trigger.get_next_fire_time(now, now)
    if fire_time is None:
        raise ValueError(f"cron expression {expression!r} never fires")
    return fire_time.astimezone(dt_timezone.utc)


def preview_runs(
    job: Job, limit: int = 5, timezone: str = "UTC"
) -> list[datetime]:
    """Upcoming run times starting at next_run_after (display only)."""
    if not job.enabled or job.next_run_after is None or limit <= 0:
        return []

    runs = [job.next_run_after]
    schedule = job.schedule
    if isinstance(schedule, IntervalSchedule):
        if schedule.interval_sec > 0:
            step = timedelta(seconds=schedule.interval_sec)
            runs.extend(job.next_run_after + step * i for i in range(1, limit))
    elif isinstance(schedule, CronSchedule) and schedule.expression:
        current = job.next_run_after
        try:
            for _ in range(limit - 1):
                current = next_cron_occurrence(schedule.expression, current, timezone)
                runs.append(current)
        except ValueError as e:
            logger.debug(f"No cron preview for {job.task_id}: {e}")
    return runs


def _disabled(reason: str, run_delta: int, failure_delta: int) -> ScheduleDecision:
    return ScheduleDecision(
        next_run_after=None,
        enabled=False,
        run_count_delta=run_delta,
        failure_count_delta=failure_delta,
        reason=reason,
    )


def compute(
    job: Job,
    outcome: RunStatus,
    now: datetime,
    timezone: str = "UTC",
) -> ScheduleDecision:
    """Decide the job's next state after ``outcome`` at ``now``.

    Failures keep the normal cadence (no backoff).  A schedule that cannot
    produce a next run disables the job instead of looping.
    """
    if not job.enabled:
        return ScheduleDecision(next_run_after=job.next_run_after, enabled=False)

    now = from_iso(now)
    run_delta = 1 if outcome in _ATTEMPTED else 0
    failure_delta = 1 if outcome is RunStatus.FAILURE else 0
    schedule = job.schedule

    if isinstance(schedule, IntervalSchedule):
        if schedule.interval_sec <= 0:
            return _disabled(
                f"interval_sec must be > 0 (got {schedule.interval_sec})",
                run_delta, failure_delta,
            )
        return ScheduleDecision(
            next_run_after=now + timedelta(seconds=schedule.interval_sec),
            enabled=True,
            run_count_delta=run_delta,
            failure_count_delta=failure_delta,
        )

    if isinstance(schedule, CronSchedule):
        if not schedule.expression:
            return _disabled("cron_expression is missing", run_delta, failure_delta)
        try:
            next_run = next_cron_occurrence(schedule.expression, now, timezone)
        except Exception as e:
            logger.warning(
                f"Invalid cron expression for {job.task_id} ({schedule.expression!r}): {e}"
            )
            return _disabled(
                f"invalid cron_expression {schedule.expression!r}: {e}",
                run_delta, failure_delta,
            )
        return ScheduleDecision(
            next_run_after=next_run,
            enabled=True,
            run_count_delta=run_delta,
            failure_count_delta=failure_delta,
        )

    return _disabled("unknown schedule_type", run_delta, failure_delta)
