"""Built-in job handlers."""

from taskbeat.core.handlers.cleanup import CleanupJobRunsHandler
from taskbeat.core.handlers.shell import ShellCommandHandler

__all__ = ["CleanupJobRunsHandler", "ShellCommandHandler"]
