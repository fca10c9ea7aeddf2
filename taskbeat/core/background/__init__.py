"""Background services — periodic scheduler tick."""

from taskbeat.core.background.beat import TickService

__all__ = ["TickService"]
