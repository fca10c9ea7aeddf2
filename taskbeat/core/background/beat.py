"""TickService — drives SchedulerLoop.tick on a fixed interval via APScheduler."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from taskbeat.core.scheduler.types import TickStats

if TYPE_CHECKING:
    from taskbeat.core.scheduler.loop import SchedulerLoop

TICK_JOB_ID = "taskbeat:tick"


class TickService:
    """Periodic trigger for the scheduler loop.

    APScheduler only provides the heartbeat; every scheduling decision is
    made by the loop against the job table.  coalesce + max_instances=1 keep
    a slow tick from stacking up behind itself in this process; other
    processes are kept apart by the leases.
    """

    def __init__(self, loop: SchedulerLoop, interval_s: int = 60):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.loop = loop
        self.interval_s = interval_s
        self.last_stats: TickStats | None = None
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self, run_immediately: bool = True) -> None:
        """Register the tick job and start the scheduler (needs a running event loop)."""
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.interval_s),
            id=TICK_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"TickService started (interval={self.interval_s}s)")
        if run_immediately:
            await self._tick()

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("TickService stopped")

    async def _tick(self) -> None:
        try:
            self.last_stats = await self.loop.tick()
        except Exception as e:
            logger.error(f"Scheduler tick error: {e}")
