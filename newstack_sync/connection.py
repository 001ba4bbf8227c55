"""
Connection manager for change-feed topics.

Owns exactly one logical Subscription per topic and drives its status:

    CONNECTING -> CONNECTED -> DEGRADED -> CONNECTING ... -> CLOSED

Transport failures schedule a retry with exponential backoff
(min(base * 2**retry_count, max)); after max_retries consecutive failures the
subscription stays DEGRADED until the consumer opens the topic again.

Every subscription carries a generation counter. Closing bumps it, cancels the
pending retry and detaches callbacks before the first await, so no event or
retry can fire for a subscription once close() has returned.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Mapping

import structlog

from .config import ReconnectConfig
from .metrics import MetricsCollector
from .transport import ChangeFilter, ChangeStream, ChannelStatus, StreamHandle

log = structlog.get_logger()

RECONNECT_BASE_MS = 1000
RECONNECT_MAX_MS = 10000
MAX_RETRIES = 3

EventSink = Callable[[str, Mapping[str, Any]], None]
StatusListener = Callable[["Subscription"], None]
Sleep = Callable[[float], Awaitable[None]]


class SubscriptionStatus(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


def backoff_delay_ms(
    retry_count: int,
    base_ms: int = RECONNECT_BASE_MS,
    max_ms: int = RECONNECT_MAX_MS,
) -> int:
    return min(base_ms * 2 ** retry_count, max_ms)


@dataclass(eq=False)
class Subscription:
    """Live state of one topic. Returned by open() as the handle for close()."""
    topic: str
    filters: frozenset[ChangeFilter]
    status: SubscriptionStatus = SubscriptionStatus.CONNECTING
    retry_count: int = 0
    last_event_at: float | None = None
    retries_exhausted: bool = False
    generation: int = 0
    stream_handle: StreamHandle | None = field(default=None, repr=False)
    retry_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_closed(self) -> bool:
        return self.status is SubscriptionStatus.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "retries_exhausted": self.retries_exhausted,
            "last_event_at": self.last_event_at,
        }


class ConnectionManager:
    """Opens, monitors, reconnects and closes change-feed subscriptions."""

    def __init__(
        self,
        stream: ChangeStream,
        on_event: EventSink,
        base_delay_ms: int = RECONNECT_BASE_MS,
        max_delay_ms: int = RECONNECT_MAX_MS,
        max_retries: int = MAX_RETRIES,
        sleep: Sleep = asyncio.sleep,
        metrics: MetricsCollector | None = None,
    ):
        self._stream = stream
        self._on_event = on_event
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._max_retries = max_retries
        self._sleep = sleep
        self._metrics = metrics
        self._subscriptions: dict[str, Subscription] = {}
        self._status_listeners: list[StatusListener] = []

    @classmethod
    def from_config(
        cls,
        stream: ChangeStream,
        on_event: EventSink,
        config: ReconnectConfig,
        **kwargs: Any,
    ) -> ConnectionManager:
        return cls(
            stream,
            on_event,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            max_retries=config.max_retries,
            **kwargs,
        )

    # --- Queries ---

    def get(self, topic: str) -> Subscription | None:
        return self._subscriptions.get(topic)

    def statuses(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._subscriptions.values()]

    @property
    def connected_count(self) -> int:
        return sum(
            1 for s in self._subscriptions.values()
            if s.status is SubscriptionStatus.CONNECTED
        )

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener. Returns a function that removes it."""
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    # --- Lifecycle ---

    async def open(self, topic: str, filters: Iterable[ChangeFilter]) -> Subscription:
        """Open a topic, replacing any live subscription for it."""
        sub = Subscription(topic=topic, filters=frozenset(filters))
        existing = self._subscriptions.get(topic)
        old_handle = self._shutdown(existing) if existing is not None else None
        self._subscriptions[topic] = sub

        log.info("connection.opening", topic=topic, filters=len(sub.filters))
        if old_handle is not None:
            await self._release(old_handle)
        await self._connect(sub)
        return sub

    async def close(self, sub: Subscription) -> None:
        """Close a subscription. Safe to call any number of times."""
        if sub.is_closed:
            return
        handle = self._shutdown(sub)
        if handle is not None:
            await self._release(handle)

    async def close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            await self.close(sub)

    # --- Internals ---

    def _shutdown(self, sub: Subscription) -> StreamHandle | None:
        # Synchronous: no callback or retry may run for sub after this returns.
        sub.generation += 1
        if sub.retry_task is not None and not sub.retry_task.done():
            sub.retry_task.cancel()
        sub.retry_task = None
        handle, sub.stream_handle = sub.stream_handle, None
        if self._subscriptions.get(sub.topic) is sub:
            del self._subscriptions[sub.topic]
        self._set_status(sub, SubscriptionStatus.CLOSED)
        log.info("connection.closed", topic=sub.topic)
        return handle

    async def _release(self, handle: StreamHandle) -> None:
        try:
            await self._stream.unsubscribe(handle)
        except Exception as exc:
            log.warning("connection.unsubscribe_failed", channel=handle.channel, error=str(exc))

    async def _connect(self, sub: Subscription) -> None:
        if sub.is_closed:
            return
        generation = sub.generation
        self._set_status(sub, SubscriptionStatus.CONNECTING)
        try:
            handle = await self._stream.subscribe(
                sub.topic,
                sub.filters,
                on_change=partial(self._handle_change, sub, generation),
                on_status=partial(self._handle_status, sub, generation),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if generation == sub.generation:
                self._handle_failure(sub, exc)
            return

        if generation != sub.generation:
            # Closed while the channel was being established.
            await self._release(handle)
            return
        sub.stream_handle = handle

    def _handle_change(
        self, sub: Subscription, generation: int, raw: Mapping[str, Any]
    ) -> None:
        if generation != sub.generation or sub.is_closed:
            return
        sub.last_event_at = time.time()
        self._on_event(sub.topic, raw)

    def _handle_status(
        self,
        sub: Subscription,
        generation: int,
        status: ChannelStatus,
        error: Exception | None = None,
    ) -> None:
        if generation != sub.generation or sub.is_closed:
            return
        if status is ChannelStatus.SUBSCRIBED:
            sub.retry_count = 0
            sub.retries_exhausted = False
            self._set_status(sub, SubscriptionStatus.CONNECTED)
            log.info("connection.connected", topic=sub.topic)
        else:
            self._handle_failure(sub, error or ConnectionError(status.value))

    def _handle_failure(self, sub: Subscription, error: Exception) -> None:
        if sub.status is SubscriptionStatus.DEGRADED:
            return
        self._set_status(sub, SubscriptionStatus.DEGRADED)

        if sub.retry_count >= self._max_retries:
            sub.retries_exhausted = True
            log.warning(
                "connection.retries_exhausted",
                topic=sub.topic,
                retries=sub.retry_count,
                error=str(error),
            )
            return

        delay_ms = backoff_delay_ms(sub.retry_count, self._base_delay_ms, self._max_delay_ms)
        sub.retry_count += 1
        log.warning(
            "connection.degraded",
            topic=sub.topic,
            error=str(error),
            retry=sub.retry_count,
            delay_ms=delay_ms,
        )
        if self._metrics:
            self._metrics.inc("reconnects_scheduled_total", topic=sub.topic)
        sub.retry_task = asyncio.create_task(
            self._retry_after(sub, sub.generation, delay_ms)
        )

    async def _retry_after(self, sub: Subscription, generation: int, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        if generation != sub.generation or sub.status is not SubscriptionStatus.DEGRADED:
            return
        sub.retry_task = None
        sub.generation += 1
        old_handle, sub.stream_handle = sub.stream_handle, None
        log.info("connection.reconnecting", topic=sub.topic, attempt=sub.retry_count)
        if old_handle is not None:
            await self._release(old_handle)
        await self._connect(sub)

    def _set_status(self, sub: Subscription, status: SubscriptionStatus) -> None:
        if sub.status is status:
            return
        sub.status = status
        if self._metrics:
            self._metrics.set_gauge("subscriptions_connected", self.connected_count)
        for listener in list(self._status_listeners):
            try:
                listener(sub)
            except Exception:
                log.exception("connection.status_listener_error", topic=sub.topic)
