"""End-to-end: SyncClient against the mock SSE change feed."""

import asyncio

import httpx

from newstack_sync.audio import BufferSink
from newstack_sync.client import SyncClient
from newstack_sync.config import SyncConfig
from newstack_sync.notifications import Permission

from .conftest import FakeNotifier, RecordingToaster, change


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


async def test_breaking_news_flows_end_to_end(realtime_server, client_config_dict, monkeypatch):
    monkeypatch.setenv("TEST_NEWSTACK_KEY", "anon-test")
    toaster = RecordingToaster()
    notifier = FakeNotifier(permission=Permission.GRANTED)
    sink = BufferSink()
    client = SyncClient(
        SyncConfig.model_validate(client_config_dict),
        toaster=toaster,
        notifier=notifier,
        audio_sink=sink,
    )

    await client.start()
    try:
        await _wait_for(lambda: client.connections.connected_count == 3)
        assert client.update_health()["status"] == "healthy"

        item = change("breaking_news", id="b1", headline="Quake reported", is_active=True)
        async with httpx.AsyncClient(base_url=realtime_server) as http:
            await http.post("/emit", json=item)
            await http.post("/emit", json=item)
            await _wait_for(lambda: client.metrics.get("notifications_suppressed_total") == 1)

            await http.post("/emit", json=change("stories", id="s1", title="Local story"))
            await _wait_for(lambda: client.feed.new_stories == 1)

        assert [m["message"] for m in toaster.messages] == ["🔴 Breaking: Quake reported"]
        assert len(notifier.shown) == 1
        assert [cue for cue, _ in sink.played] == ["success"]
        assert client.notifications.state.pending_count == 1
    finally:
        await client.stop()

    assert client.connections.statuses() == []
