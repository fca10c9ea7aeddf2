"""SchedulerLoop — one tick over every due job.

Per due job:
    1. acquire the lease (contention -> skipped, nothing written)
    2. sanity-check the schedule (unusable -> job disabled, skipped)
    3. look up the handler (missing -> skipped with diagnostic)
    4. parse config_json (bad JSON -> {} and a warning)
    5. run the handler (raise/return exception -> failure)
    6. compute the next schedule and commit it in one statement
    7. record the run, best-effort

Jobs are isolated from each other: whatever goes wrong with one is logged
and counted, and the tick moves on.
"""

from __future__ import annotations

import inspect
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbeat.core.clock import from_iso, utcnow
from taskbeat.core.scheduler.calculator import compute
from taskbeat.core.scheduler.errors import RunRecordError
from taskbeat.core.scheduler.lease import DEFAULT_LEASE_SECONDS, LeaseManager
from taskbeat.core.scheduler.recorder import RunRecord, RunRecorder, StoreRunRecorder
from taskbeat.core.scheduler.registry import Handler, HandlerContext, HandlerRegistry
from taskbeat.core.scheduler.types import Job, RunStatus, ScheduleDecision, TickStats

if TYPE_CHECKING:
    from taskbeat.core.config.schema import Config
    from taskbeat.db.store import JobStore

HANDLER_NOT_FOUND = "handler not found"
_MAX_ERROR_CHARS = 2000


class SchedulerLoop:
    """Selects due jobs, leases, executes and commits them."""

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        recorder: RunRecorder | None = None,
        lease_duration_s: int = DEFAULT_LEASE_SECONDS,
        timezone: str = "UTC",
        disable_on_missing_handler: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.recorder = recorder if recorder is not None else StoreRunRecorder(store)
        self.leases = LeaseManager(store, lease_duration_s)
        self.timezone = timezone
        self.disable_on_missing_handler = disable_on_missing_handler
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: JobStore,
        registry: HandlerRegistry,
        recorder: RunRecorder | None = None,
    ) -> SchedulerLoop:
        from taskbeat.core.scheduler.recorder import NullRunRecorder

        if recorder is None and not config.scheduler.record_runs:
            recorder = NullRunRecorder()
        return cls(
            store,
            registry,
            recorder=recorder,
            lease_duration_s=config.scheduler.lease_duration_s,
            timezone=config.scheduler.timezone,
            disable_on_missing_handler=config.scheduler.disable_on_missing_handler,
        )

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> TickStats:
        """Process every job due at ``now``. Never raises for a single job."""
        now = from_iso(now) if now is not None else self._clock()
        rows = self.store.select_due(now)
        stats = TickStats(due_count=len(rows))
        if not rows:
            logger.debug("Tick: no due jobs")
            return stats

        logger.info(f"Tick: {len(rows)} due job(s)")
        for row in rows:
            task_id = row.get("task_id")
            try:
                status, entry = await self._process(Job.from_row(row), now)
            except Exception as e:
                stats.failed_count += 1
                logger.error(f"Scheduled job {task_id} aborted: {e}")
                continue

            stats.count(status)
            if entry is not None:
                record_run(self.recorder, entry)

        logger.info(
            f"Tick done: due={stats.due_count} executed={stats.executed_count} "
            f"skipped={stats.skipped_count} failed={stats.failed_count}"
        )
        return stats

    # ── Per-job processing ────────────────────────────────────

    async def _process(self, job: Job, now: datetime) -> tuple[RunStatus, RunRecord | None]:
        task_id = job.task_id
        started_at = self._clock()
        start = time.monotonic()

        if not self.leases.acquire(task_id, now):
            return RunStatus.SKIPPED, None

        # Unusable schedule: disable without running the handler
        precheck = compute(job, RunStatus.SKIPPED, now, self.timezone)
        if not precheck.enabled:
            logger.warning(f"Scheduled job {task_id} disabled: {precheck.reason}")
            return RunStatus.SKIPPED, self._commit(
                job, RunStatus.SKIPPED, precheck, started_at, start,
                summary=f"invalid schedule: {precheck.reason}",
            )

        handler = self.registry.lookup(job.handler_id)
        if handler is None:
            logger.warning(
                f"Scheduled job {task_id}: no handler registered for {job.handler_id!r}"
            )
            if self.disable_on_missing_handler:
                decision = ScheduleDecision(
                    next_run_after=None, enabled=False, reason=HANDLER_NOT_FOUND,
                )
            else:
                decision = precheck
            return RunStatus.SKIPPED, self._commit(
                job, RunStatus.SKIPPED, decision, started_at, start,
                summary=HANDLER_NOT_FOUND,
            )

        ctx = HandlerContext(task_id=task_id, now=now, config=parse_job_config(job))
        outcome = await execute_handler(handler, ctx)
        status = outcome.status
        if status is RunStatus.FAILURE:
            logger.error(f"Scheduled job {task_id} ({handler.id}) failed: {outcome.error}")

        decision = compute(job, status, now, self.timezone)
        entry = self._commit(
            job, status, decision, started_at, start,
            summary=outcome.summary,
            error_message=outcome.error,
            details=outcome.details,
        )
        if status is RunStatus.SUCCESS:
            logger.info(f"Scheduled job {task_id} ({handler.id}) done in {entry.duration_ms}ms")
        return status, entry

    def _commit(
        self,
        job: Job,
        status: RunStatus,
        decision: ScheduleDecision,
        started_at: datetime,
        start: float,
        summary: str | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> RunRecord:
        """Write the final row state and build the run record for it."""
        finished_at = self._clock()
        self.store.commit_run(
            job.task_id,
            status.value,
            started_at,
            finished_at,
            next_run_after=decision.next_run_after,
            enabled=decision.enabled,
            run_count_delta=decision.run_count_delta,
            failure_count_delta=decision.failure_count_delta,
        )
        return RunRecord(
            task_id=job.task_id,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - start) * 1000),
            summary=summary,
            error_message=error_message,
            details=details,
        )


# ════════════════════════════════════════════════════════════
# HANDLER EXECUTION (shared with manual runs)
# ════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class HandlerOutcome:
    status: RunStatus  # SUCCESS or FAILURE
    summary: str | None = None
    error: str | None = None
    details: dict[str, Any] | None = None


def parse_job_config(job: Job) -> dict[str, Any]:
    """Decode config_json; anything unusable becomes an empty config."""
    if not job.config_json:
        return {}
    try:
        config = json.loads(job.config_json)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Invalid config_json for {job.task_id}, using empty config: {e}")
        return {}
    if not isinstance(config, dict):
        logger.warning(f"config_json for {job.task_id} is not an object, using empty config")
        return {}
    return config


async def execute_handler(handler: Handler, ctx: HandlerContext) -> HandlerOutcome:
    """Run a sync or async handler. Never raises for handler errors."""
    try:
        result = handler.run(ctx)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        return HandlerOutcome(RunStatus.FAILURE, error=_error_message(e))

    if isinstance(result, BaseException):
        return HandlerOutcome(RunStatus.FAILURE, error=_error_message(result))

    details = result if isinstance(result, dict) else None
    summary = details.get("summary") if details else None
    return HandlerOutcome(
        RunStatus.SUCCESS,
        summary=summary if isinstance(summary, str) else None,
        details=details,
    )


def record_run(recorder: RunRecorder, entry: RunRecord) -> None:
    """Hand a run to the recorder. Failures are logged, never raised."""
    try:
        recorder.record(entry)
    except RunRecordError as e:
        logger.warning(f"Run history dropped for {entry.task_id}: {e}")
    except Exception as e:
        logger.error(f"Run recorder crashed for {entry.task_id}: {e}")


def _error_message(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    return message[:_MAX_ERROR_CHARS]


async def run_due_scheduled_jobs(
    store: JobStore,
    registry: HandlerRegistry,
    *,
    lease_duration_s: int = DEFAULT_LEASE_SECONDS,
    recorder: RunRecorder | None = None,
    now: datetime | None = None,
    timezone: str = "UTC",
) -> TickStats:
    """Trigger entry point: run one tick and return its stats."""
    loop = SchedulerLoop(
        store,
        registry,
        recorder=recorder,
        lease_duration_s=lease_duration_s,
        timezone=timezone,
    )
    return await loop.tick(now)
