"""Typed event dispatch.

Handlers are registered per EventKind and called in registration order
with the event payload. Plain callables run inline; coroutine functions are
scheduled as tasks in the same order. A failing handler is logged and never
interrupts the receive path.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import structlog

from src.teams_bridge.schemas import ClientEvent, EventKind, EventPayload

logger = structlog.get_logger(__name__)

Handler = Callable[[EventPayload], Any]


class EventDispatcher:
    """Dispatch table from EventKind to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = {kind: [] for kind in EventKind}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, kind: EventKind, handler: Handler | None = None) -> Any:
        """Register a handler; usable as a decorator when handler is omitted."""
        if handler is None:
            def decorator(func: Handler) -> Handler:
                self._handlers[kind].append(func)
                return func

            return decorator
        self._handlers[kind].append(handler)
        return handler

    def off(self, kind: EventKind, handler: Handler) -> None:
        if handler in self._handlers[kind]:
            self._handlers[kind].remove(handler)

    def emit(self, event: ClientEvent) -> None:
        """Deliver an event to every handler registered for its kind."""
        for handler in list(self._handlers[event.kind]):
            try:
                result = handler(event.payload)
            except Exception:
                logger.warning("events.handler_failed", kind=event.kind.value, exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("events.handler_failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for handler tasks still running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
