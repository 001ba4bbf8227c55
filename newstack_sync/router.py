"""
Change event routing.

Narrows raw change-feed payloads into ChangeEvents and dispatches them by
(table, operation) to every registered handler. Plain callables run inline;
coroutine handlers are scheduled as tasks so a slow consumer never holds up
the others. Handler failures are logged and never stop delivery.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Mapping

import structlog

from .events import ChangeEvent, MalformedEventError, Operation
from .metrics import MetricsCollector

log = structlog.get_logger()

ANY_OPERATION = "*"

Handler = Callable[[ChangeEvent], Any]


class ChangeEventRouter:
    """Fans immutable change events out to registered handlers."""

    def __init__(self, metrics: MetricsCollector | None = None):
        self._metrics = metrics
        self._routes: dict[tuple[str, str], list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Future] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register(
        self,
        table: str,
        operation: Operation | str,
        handler: Handler,
    ) -> Callable[[], None]:
        """Register a handler for a table and operation ("*" for all).

        Returns a function that removes the registration.
        """
        op = operation.value if isinstance(operation, Operation) else operation.upper()
        key = (table, op)
        self._routes[key].append(handler)

        def remove() -> None:
            if handler in self._routes.get(key, []):
                self._routes[key].remove(handler)

        return remove

    def route_raw(self, topic: str, raw: Mapping[str, Any]) -> ChangeEvent | None:
        try:
            event = ChangeEvent.from_raw(raw, topic=topic)
        except MalformedEventError as exc:
            log.warning("router.malformed_event", topic=topic, error=str(exc))
            if self._metrics:
                self._metrics.inc("events_malformed_total", topic=topic)
            return None
        self.route(event)
        return event

    def route(self, event: ChangeEvent) -> int:
        """Dispatch an event. Returns the number of handlers it reached."""
        handlers = [
            *self._routes.get((event.table, event.operation.value), ()),
            *self._routes.get((event.table, ANY_OPERATION), ()),
        ]
        if self._metrics:
            self._metrics.inc("events_routed_total", table=event.table)
        if not handlers:
            log.debug("router.unhandled", table=event.table, operation=event.operation.value)
            return 0

        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                log.exception(
                    "router.handler_error",
                    table=event.table,
                    operation=event.operation.value,
                )
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._task_done)
        return len(handlers)

    async def drain(self) -> None:
        """Wait for every scheduled handler task to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _task_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("router.handler_error", error=str(exc), exc_info=exc)
