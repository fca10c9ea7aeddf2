"""Persistence layer."""

from taskbeat.db.store import JobStore

__all__ = ["JobStore"]
