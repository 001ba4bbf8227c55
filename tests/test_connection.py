"""Tests for subscription lifecycle, backoff and close semantics."""

import asyncio

import pytest

from newstack_sync.config import ReconnectConfig
from newstack_sync.connection import (
    ConnectionManager,
    SubscriptionStatus,
    backoff_delay_ms,
)
from newstack_sync.transport import ChangeFilter, ChannelStatus

from .conftest import FakeChangeStream, change

TOPIC = "stories-realtime"
FILTERS = (ChangeFilter("INSERT", "stories"),)


class Recorder:
    def __init__(self):
        self.events = []
        self.delays = []

    def on_event(self, topic, raw):
        self.events.append((topic, raw))

    async def sleep(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def manager(fake_stream, recorder):
    return ConnectionManager(fake_stream, recorder.on_event, sleep=recorder.sleep)


async def _fail_and_retry(stream, sub):
    stream.emit_status(TOPIC, ChannelStatus.CHANNEL_ERROR, ConnectionError("drop"))
    task = sub.retry_task
    if task is not None:
        await task


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def test_backoff_delays():
    assert [backoff_delay_ms(n) for n in range(5)] == [1000, 2000, 4000, 8000, 10000]
    assert backoff_delay_ms(10) == 10000


def test_from_config(fake_stream, recorder):
    cfg = ReconnectConfig(base_delay_ms=10, max_delay_ms=50, max_retries=1)
    mgr = ConnectionManager.from_config(fake_stream, recorder.on_event, cfg)
    assert mgr._base_delay_ms == 10
    assert mgr._max_retries == 1


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


async def test_open_then_connected(manager, fake_stream):
    sub = await manager.open(TOPIC, FILTERS)
    assert sub.status is SubscriptionStatus.CONNECTING

    fake_stream.emit_status(TOPIC, ChannelStatus.SUBSCRIBED)
    assert sub.status is SubscriptionStatus.CONNECTED
    assert manager.connected_count == 1


async def test_events_forwarded_with_last_event_at(manager, fake_stream, recorder):
    sub = await manager.open(TOPIC, FILTERS)
    fake_stream.emit_status(TOPIC, ChannelStatus.SUBSCRIBED)

    raw = change("stories", id="s1", title="Hello")
    fake_stream.emit_change(TOPIC, raw)

    assert recorder.events == [(TOPIC, raw)]
    assert sub.last_event_at is not None


async def test_three_failures_stop_retrying(manager, fake_stream, recorder):
    sub = await manager.open(TOPIC, FILTERS)

    for _ in range(3):
        await _fail_and_retry(fake_stream, sub)
        assert sub.status is SubscriptionStatus.CONNECTING

    # Fourth consecutive failure: no further retry is scheduled.
    fake_stream.emit_status(TOPIC, ChannelStatus.CHANNEL_ERROR)

    assert recorder.delays == [1.0, 2.0, 4.0]
    assert sub.status is SubscriptionStatus.DEGRADED
    assert sub.retries_exhausted is True
    assert sub.retry_task is None
    assert fake_stream.subscribe_calls == [TOPIC] * 4


async def test_retry_count_resets_on_connect(manager, fake_stream, recorder):
    sub = await manager.open(TOPIC, FILTERS)
    await _fail_and_retry(fake_stream, sub)
    await _fail_and_retry(fake_stream, sub)
    assert sub.retry_count == 2

    fake_stream.emit_status(TOPIC, ChannelStatus.SUBSCRIBED)
    assert sub.retry_count == 0
    assert sub.status is SubscriptionStatus.CONNECTED

    await _fail_and_retry(fake_stream, sub)
    assert recorder.delays == [1.0, 2.0, 1.0]


async def test_subscribe_exception_degrades(recorder):
    stream = FakeChangeStream(fail_subscribe=True)
    mgr = ConnectionManager(stream, recorder.on_event, sleep=recorder.sleep, max_retries=1)
    sub = await mgr.open(TOPIC, FILTERS)

    assert sub.status is SubscriptionStatus.DEGRADED
    await sub.retry_task
    assert sub.status is SubscriptionStatus.DEGRADED
    assert sub.retries_exhausted is True
    assert stream.subscribe_calls == [TOPIC, TOPIC]


async def test_reopen_after_exhaustion(manager, fake_stream):
    sub = await manager.open(TOPIC, FILTERS)
    for _ in range(3):
        await _fail_and_retry(fake_stream, sub)
    fake_stream.emit_status(TOPIC, ChannelStatus.CHANNEL_ERROR)
    assert sub.retries_exhausted

    fresh = await manager.open(TOPIC, FILTERS)
    assert sub.is_closed
    assert fresh.retry_count == 0
    assert manager.get(TOPIC) is fresh


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


async def test_close_is_idempotent(manager, fake_stream):
    sub = await manager.open(TOPIC, FILTERS)
    fake_stream.emit_status(TOPIC, ChannelStatus.SUBSCRIBED)

    await manager.close(sub)
    await manager.close(sub)

    assert sub.status is SubscriptionStatus.CLOSED
    assert len(fake_stream.unsubscribed) == 1
    assert manager.get(TOPIC) is None


async def test_close_cancels_pending_retry(fake_stream, recorder):
    gate = asyncio.Event()

    async def slow_sleep(seconds):
        recorder.delays.append(seconds)
        await gate.wait()

    mgr = ConnectionManager(fake_stream, recorder.on_event, sleep=slow_sleep)
    sub = await mgr.open(TOPIC, FILTERS)
    fake_stream.emit_status(TOPIC, ChannelStatus.CHANNEL_ERROR)
    retry = sub.retry_task
    assert retry is not None

    await mgr.close(sub)
    gate.set()
    with pytest.raises(asyncio.CancelledError):
        await retry

    assert fake_stream.subscribe_calls == [TOPIC]
    assert sub.status is SubscriptionStatus.CLOSED


async def test_retry_firing_after_close_is_discarded(fake_stream, recorder):
    mgr = ConnectionManager(fake_stream, recorder.on_event, sleep=recorder.sleep)
    sub = await mgr.open(TOPIC, FILTERS)
    fake_stream.emit_status(TOPIC, ChannelStatus.CHANNEL_ERROR)
    stale_generation = sub.generation

    await mgr.close(sub)
    # A timer that escaped cancellation must still be a no-op.
    await mgr._retry_after(sub, stale_generation, 1000)

    assert fake_stream.subscribe_calls == [TOPIC]
    assert sub.status is SubscriptionStatus.CLOSED


async def test_no_events_after_close(manager, fake_stream, recorder):
    sub = await manager.open(TOPIC, FILTERS)
    fake_stream.emit_status(TOPIC, ChannelStatus.SUBSCRIBED)
    await manager.close(sub)

    fake_stream.emit_change(TOPIC, change("stories", id="late"))
    fake_stream.emit_status(TOPIC, ChannelStatus.CHANNEL_ERROR)

    assert recorder.events == []
    assert sub.status is SubscriptionStatus.CLOSED
    assert sub.retry_task is None


async def test_open_replaces_existing_topic(manager, fake_stream):
    first = await manager.open(TOPIC, FILTERS)
    first_handle = fake_stream.handle(TOPIC)
    second = await manager.open(TOPIC, FILTERS)

    assert first.is_closed
    assert first_handle in fake_stream.unsubscribed
    assert manager.get(TOPIC) is second
    assert len(manager.statuses()) == 1


async def test_status_listener(manager, fake_stream):
    seen = []
    remove = manager.on_status(lambda s: seen.append(s.status))

    sub = await manager.open(TOPIC, FILTERS)
    fake_stream.emit_status(TOPIC, ChannelStatus.SUBSCRIBED)
    remove()
    await manager.close(sub)

    assert seen == [SubscriptionStatus.CONNECTED]
