"""
Change-feed transport.

The backend change stream is consumed through a small capability:

    subscribe(channel, filters, on_change, on_status) -> StreamHandle
    unsubscribe(handle)

SSEChangeStream implements it over one long-lived SSE response per channel.
It never reconnects on its own: failures are reported as CHANNEL_ERROR and
the ConnectionManager decides whether and when to retry.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

import httpx
import structlog

log = structlog.get_logger()


class ChannelStatus(str, enum.Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


ChangeCallback = Callable[[Mapping[str, Any]], None]
StatusCallback = Callable[[ChannelStatus, Exception | None], None]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


@dataclass(frozen=True)
class ChangeFilter:
    """One (event, table, optional predicate) selector within a topic."""
    event: str
    table: str
    schema: str = "public"
    filter: str | None = None

    def matches(self, raw: Mapping[str, Any]) -> bool:
        if raw.get("table") != self.table:
            return False
        if raw.get("schema", self.schema) != self.schema:
            return False
        event_type = str(raw.get("eventType", raw.get("type", ""))).upper()
        if self.event != "*" and event_type != self.event.upper():
            return False
        if self.filter:
            return self._predicate_matches(raw)
        return True

    def _predicate_matches(self, raw: Mapping[str, Any]) -> bool:
        # PostgREST style: column=op.value
        column, _, rest = self.filter.partition("=")
        op, _, expected = rest.partition(".")
        record = raw.get("new") or {}
        if not isinstance(record, Mapping) or column not in record:
            return False
        actual = _format_value(record[column])
        if op == "eq":
            return actual == expected
        if op == "neq":
            return actual != expected
        if op == "in":
            return actual in expected.strip("()").split(",")
        log.warning("transport.unsupported_filter", filter=self.filter)
        return False


@dataclass(eq=False)
class StreamHandle:
    channel: str
    filters: tuple[ChangeFilter, ...]
    active: bool = True
    task: asyncio.Task | None = field(default=None, repr=False)


class ChangeStream(abc.ABC):
    """Backend change-stream capability."""

    @abc.abstractmethod
    async def subscribe(
        self,
        channel: str,
        filters: Iterable[ChangeFilter],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> StreamHandle:
        ...

    @abc.abstractmethod
    async def unsubscribe(self, handle: StreamHandle) -> None:
        ...

    async def aclose(self) -> None:
        return None


class SSEChangeStream(ChangeStream):
    """
    Change stream consumed over Server-Sent Events.

    Each channel is one streaming GET to ``{url}/realtime/v1/changes``; frames
    of type ``postgres_changes`` carry the raw change payload as JSON.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_tls: bool = True,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._handles: set[StreamHandle] = set()

    async def subscribe(
        self,
        channel: str,
        filters: Iterable[ChangeFilter],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> StreamHandle:
        handle = StreamHandle(channel=channel, filters=tuple(filters))
        handle.task = asyncio.create_task(self._run(handle, on_change, on_status))
        self._handles.add(handle)
        return handle

    async def unsubscribe(self, handle: StreamHandle) -> None:
        handle.active = False
        self._handles.discard(handle)
        if handle.task and not handle.task.done():
            handle.task.cancel()
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
        log.debug("transport.unsubscribed", channel=handle.channel)

    async def aclose(self) -> None:
        for handle in list(self._handles):
            await self.unsubscribe(handle)

    async def _run(
        self,
        handle: StreamHandle,
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> None:
        try:
            await self._connect_and_stream(handle, on_change, on_status)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if handle.active:
                log.warning(
                    "transport.channel_error",
                    channel=handle.channel,
                    error=str(exc),
                )
                on_status(ChannelStatus.CHANNEL_ERROR, exc)
            return

        if handle.active:
            log.info("transport.stream_ended", channel=handle.channel)
            on_status(ChannelStatus.CLOSED, None)

    async def _connect_and_stream(
        self,
        handle: StreamHandle,
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> None:
        headers = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"

        params = {
            "channel": handle.channel,
            "tables": ",".join(sorted({f.table for f in handle.filters})),
        }
        url = f"{self._url}/realtime/v1/changes"

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(None),
            verify=self._verify_tls,
        ) as client:
            async with client.stream("GET", url, headers=headers, params=params) as response:
                response.raise_for_status()
                if not handle.active:
                    return
                log.info("transport.subscribed", channel=handle.channel, url=url)
                on_status(ChannelStatus.SUBSCRIBED, None)

                current_event_type: str | None = None
                current_data_lines: list[str] = []

                async for line in response.aiter_lines():
                    if not handle.active:
                        break

                    line = line.rstrip("\r\n")

                    if line.startswith("event:"):
                        current_event_type = line[6:].strip()
                    elif line.startswith("data:"):
                        current_data_lines.append(line[5:].strip())
                    elif line.startswith(":") or line.startswith("id:"):
                        pass
                    elif line == "":
                        if current_data_lines:
                            self._dispatch(
                                handle, current_event_type, current_data_lines, on_change
                            )
                        current_event_type = None
                        current_data_lines = []

    def _dispatch(
        self,
        handle: StreamHandle,
        event_type: str | None,
        data_lines: list[str],
        on_change: ChangeCallback,
    ) -> None:
        if event_type not in (None, "postgres_changes"):
            return

        data_str = "\n".join(data_lines)
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            log.warning("transport.parse_error", channel=handle.channel, data=data_str[:200])
            return

        if not isinstance(data, dict):
            log.warning("transport.unexpected_frame", channel=handle.channel)
            return

        if any(f.matches(data) for f in handle.filters):
            on_change(data)
