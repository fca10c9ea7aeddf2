"""LeaseManager — at-most-one concurrent execution per job.

The lease is the job row's ``lock_until`` column.  Acquiring it is a single
conditional UPDATE against the store; there is no separate read, so two
processes racing for the same row cannot both win.

Release is implicit: the scheduler clears ``lock_until`` in its final
commit.  A holder that crashes leaves the lease to expire on its own; the
next due-scan that sees the stale lease simply re-acquires it.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from taskbeat.db.store import JobStore

DEFAULT_LEASE_SECONDS = 300


class LeaseManager:
    """Time-bounded leases on scheduled_jobs rows."""

    def __init__(self, store: JobStore, lease_duration_s: int = DEFAULT_LEASE_SECONDS):
        if lease_duration_s <= 0:
            raise ValueError("lease_duration_s must be > 0")
        self.store = store
        self.lease_duration = timedelta(seconds=lease_duration_s)

    def acquire(
        self,
        task_id: str,
        now: datetime,
        lease_duration: timedelta | None = None,
        require_enabled: bool = True,
    ) -> bool:
        """Try to take the lease. False means contention, not an error."""
        lock_until = now + (lease_duration or self.lease_duration)
        acquired = self.store.try_acquire_lease(
            task_id, now, lock_until, require_enabled=require_enabled,
        )
        if acquired:
            logger.debug(f"Lease acquired: {task_id} until {lock_until.isoformat()}")
        else:
            logger.debug(f"Lease busy or job disabled: {task_id}")
        return acquired
