"""
Shared fixtures: in-memory change stream, recording toaster and notifier,
temporary local storage, and the uvicorn-hosted mock change feed.
"""

import asyncio
import random
from typing import Any, Callable, Mapping

import pytest
import uvicorn

from newstack_sync.notifications import NativeNotifier, Permission, ToastAction, Toaster
from newstack_sync.storage import LocalStorage
from newstack_sync.transport import ChangeStream, ChannelStatus, StreamHandle

from .mock_servers import create_realtime_app


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeChangeStream(ChangeStream):
    """Records subscriptions and lets tests drive status and change callbacks."""

    def __init__(self, fail_subscribe: bool = False):
        self.fail_subscribe = fail_subscribe
        self.subscribe_calls: list[str] = []
        self.unsubscribed: list[StreamHandle] = []
        self._callbacks: dict[str, tuple[StreamHandle, Callable, Callable]] = {}

    async def subscribe(self, channel, filters, on_change, on_status):
        self.subscribe_calls.append(channel)
        if self.fail_subscribe:
            raise ConnectionError("backend unreachable")
        handle = StreamHandle(channel=channel, filters=tuple(filters))
        self._callbacks[channel] = (handle, on_change, on_status)
        return handle

    async def unsubscribe(self, handle):
        handle.active = False
        self.unsubscribed.append(handle)

    def handle(self, channel: str) -> StreamHandle:
        return self._callbacks[channel][0]

    def emit_status(self, channel: str, status: ChannelStatus, error: Exception | None = None):
        _, _, on_status = self._callbacks[channel]
        on_status(status, error)

    def emit_change(self, channel: str, raw: Mapping[str, Any]):
        # Deliberately ignores handle.active: stale callbacks must be guarded upstream.
        _, on_change, _ = self._callbacks[channel]
        on_change(raw)


class RecordingToaster(Toaster):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[dict[str, Any]] = []

    def show(self, message, level="info", duration_ms=4000, action: ToastAction | None = None):
        if self.fail:
            raise RuntimeError("toast renderer crashed")
        self.messages.append(
            {"message": message, "level": level, "duration_ms": duration_ms, "action": action}
        )


class FakeNotification:
    def __init__(self, title: str, options: dict[str, Any]):
        self.title = title
        self.options = options
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


class FakeNotifier(NativeNotifier):
    def __init__(
        self,
        permission: Permission = Permission.DEFAULT,
        prompt_result: Permission = Permission.GRANTED,
        fail_show: bool = False,
    ):
        self.permission = permission
        self.prompt_result = prompt_result
        self.fail_show = fail_show
        self.prompts = 0
        self.shown: list[FakeNotification] = []

    def current_permission(self) -> Permission:
        return self.permission

    async def request_permission(self) -> Permission:
        self.prompts += 1
        self.permission = self.prompt_result
        return self.prompt_result

    def show(self, title, *, body, icon, tag, require_interaction, on_click):
        if self.fail_show:
            raise OSError("notification daemon unavailable")
        notification = FakeNotification(
            title,
            {
                "body": body,
                "icon": icon,
                "tag": tag,
                "require_interaction": require_interaction,
                "on_click": on_click,
            },
        )
        self.shown.append(notification)
        return notification


def change(table: str, event_type: str = "INSERT", **record: Any) -> dict[str, Any]:
    """Build a raw change-feed payload."""
    return {
        "schema": "public",
        "table": table,
        "eventType": event_type,
        "new": record,
        "old": {},
        "commit_timestamp": "2026-10-18T09:00:00Z",
    }


@pytest.fixture
def fake_stream():
    return FakeChangeStream()


@pytest.fixture
def toaster():
    return RecordingToaster()


@pytest.fixture
async def storage(tmp_path):
    s = LocalStorage(str(tmp_path / "local.db"))
    await s.open()
    yield s
    await s.close()


# ---------------------------------------------------------------------------
# Mock change feed server
# ---------------------------------------------------------------------------


class _UvicornServer:
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve())
        for _ in range(100):
            if self.server.started:
                return
            await asyncio.sleep(0.05)
        raise RuntimeError("Server did not start")

    async def stop(self):
        self.server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()


def _pick_port():
    return random.randint(19000, 19999)


@pytest.fixture
async def realtime_server():
    port = _pick_port()
    srv = _UvicornServer(create_realtime_app(), "127.0.0.1", port)
    await srv.start()
    yield f"http://127.0.0.1:{port}"
    await srv.stop()


@pytest.fixture
def client_config_dict(realtime_server, tmp_path):
    return {
        "realtime": {"url": realtime_server, "api_key_env": "TEST_NEWSTACK_KEY"},
        "reconnect": {"base_delay_ms": 50, "max_delay_ms": 200, "max_retries": 3},
        "storage": {"db_path": str(tmp_path / "client.db")},
        "logging": {"level": "debug", "format": "text"},
        "metrics": {"enabled": False, "port": _pick_port()},
    }
