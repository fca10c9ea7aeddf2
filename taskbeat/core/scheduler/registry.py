"""Handler registry — pluggable execution units keyed by handler id.

The registry is an ordinary object handed to the scheduler; there is no
module-level singleton.  ``build_handler_registry`` assembles the default
one with the built-in handlers.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Protocol, runtime_checkable

from loguru import logger

if TYPE_CHECKING:
    from taskbeat.core.config.schema import Config
    from taskbeat.db.store import JobStore

HANDLER_CATEGORIES = frozenset({"maintenance", "business"})


@dataclass
class ConfigField:
    """One entry of a handler's config schema (for UIs and validation hints)."""

    name: str
    label: str
    type: str = "string"  # string | number | boolean | select | textarea
    default: Any = None
    required: bool = False
    min: float | None = None
    max: float | None = None
    description: str = ""
    options: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class HandlerContext:
    """What a handler receives for one execution."""

    task_id: str
    now: datetime
    config: dict[str, Any]


@runtime_checkable
class Handler(Protocol):
    id: str
    name: str
    description: str
    category: str
    config_schema: list[ConfigField]

    def run(
        self, ctx: HandlerContext
    ) -> dict[str, Any] | None | Awaitable[dict[str, Any] | None]:
        """Execute once. Raise (or return an exception) to report failure."""
        ...


class HandlerRegistry:
    """handler_id -> Handler map with metadata introspection."""

    def __init__(self, handlers: list[Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: Handler) -> None:
        """Register a handler, replacing any previous one with the same id."""
        handler_id = getattr(handler, "id", None)
        if not isinstance(handler_id, str) or not handler_id:
            raise ValueError("handler.id must be a non-empty string")
        if not callable(getattr(handler, "run", None)):
            raise ValueError(f"handler.run must be callable ({handler_id})")
        name = getattr(handler, "name", None)
        if not isinstance(name, str) or not name:
            raise ValueError(f"handler.name must be a non-empty string ({handler_id})")
        if getattr(handler, "category", None) not in HANDLER_CATEGORIES:
            raise ValueError(
                f"handler.category must be one of {sorted(HANDLER_CATEGORIES)} ({handler_id})"
            )

        if handler_id in self._handlers:
            logger.warning(f"Handler {handler_id} re-registered, replacing previous")
        self._handlers[handler_id] = handler
        logger.debug(f"Handler registered: {handler_id}")

    def lookup(self, handler_id: str | None) -> Handler | None:
        if not handler_id:
            return None
        return self._handlers.get(handler_id)

    def __contains__(self, handler_id: object) -> bool:
        return handler_id in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def ids(self) -> list[str]:
        return list(self._handlers)

    def handler_type(self, handler_id: str) -> dict[str, Any] | None:
        """Metadata for one handler (no run callable)."""
        handler = self._handlers.get(handler_id)
        if handler is None:
            return None
        return {
            "id": handler.id,
            "name": handler.name,
            "description": getattr(handler, "description", "") or "",
            "category": handler.category,
            "config_schema": [asdict(f) for f in getattr(handler, "config_schema", [])],
        }

    def handler_types(self) -> list[dict[str, Any]]:
        return [self.handler_type(hid) for hid in sorted(self._handlers)]


def build_handler_registry(config: Config, store: JobStore | None = None) -> HandlerRegistry:
    """Registry with the built-in handlers enabled by ``config``.

    The run-history cleanup handler needs the store; without one it is
    left out.
    """
    from taskbeat.core.handlers.cleanup import CleanupJobRunsHandler
    from taskbeat.core.handlers.shell import ShellCommandHandler

    registry = HandlerRegistry()
    if store is not None:
        registry.register(
            CleanupJobRunsHandler(store, keep_days=config.handlers.cleanup.keep_days)
        )
    if config.handlers.shell.enabled:
        registry.register(ShellCommandHandler(timeout=config.handlers.shell.timeout))
    return registry
