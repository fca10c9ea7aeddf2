"""Run-history cleanup handler."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbeat.core.scheduler.registry import ConfigField, HandlerContext

if TYPE_CHECKING:
    from taskbeat.db.store import JobStore

MIN_KEEP_DAYS = 1
MAX_KEEP_DAYS = 365


class CleanupJobRunsHandler:
    """Deletes scheduled_job_runs rows older than keep_days."""

    id = "cleanup_job_runs"
    name = "Clean up run history"
    description = "Delete run history entries older than keep_days."
    category = "maintenance"

    def __init__(self, store: JobStore, keep_days: int = 30):
        self.store = store
        self.keep_days = keep_days
        self.config_schema = [
            ConfigField(
                name="keep_days",
                label="Keep days",
                type="number",
                default=keep_days,
                min=MIN_KEEP_DAYS,
                max=MAX_KEEP_DAYS,
                description="Runs older than this many days are deleted.",
            ),
        ]

    def run(self, ctx: HandlerContext) -> dict[str, Any]:
        try:
            keep_days = int(ctx.config.get("keep_days", self.keep_days))
        except (TypeError, ValueError):
            keep_days = self.keep_days
        keep_days = min(max(keep_days, MIN_KEEP_DAYS), MAX_KEEP_DAYS)

        cutoff = ctx.now - timedelta(days=keep_days)
        deleted = self.store.prune_runs(cutoff)
        logger.info(f"[{ctx.task_id}] pruned {deleted} run(s) older than {keep_days}d")
        return {
            "summary": f"deleted {deleted} run(s) older than {keep_days} days",
            "deleted": deleted,
            "keep_days": keep_days,
            "cutoff": cutoff.isoformat(),
        }
