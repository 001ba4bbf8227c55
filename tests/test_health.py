"""Tests for the health endpoint."""

import random

import httpx

from newstack_sync.health import HealthServer
from newstack_sync.metrics import MetricsCollector


def _sub(topic, status, exhausted=False):
    return {"topic": topic, "status": status, "retry_count": 0, "retries_exhausted": exhausted}


def test_snapshot_status():
    server = HealthServer()
    assert server.snapshot()["status"] == "degraded"

    server.update_status([_sub("stories-realtime", "connected")], offline=False, cached_items=4)
    snap = server.snapshot()
    assert snap["status"] == "healthy"
    assert snap["connected"] == 1
    assert snap["cached_items"] == 4

    server.update_status([_sub("stories-realtime", "connected")], offline=True, cached_items=4)
    assert server.snapshot()["status"] == "degraded"


def test_snapshot_lists_exhausted_topics():
    server = HealthServer()
    server.update_status(
        [
            _sub("stories-realtime", "connected"),
            _sub("breaking-news-realtime", "degraded", exhausted=True),
        ],
        offline=False,
        cached_items=0,
    )
    snap = server.snapshot()
    assert snap["status"] == "degraded"
    assert snap["retries_exhausted"] == ["breaking-news-realtime"]


async def test_http_endpoints():
    port = random.randint(19000, 19999)
    metrics = MetricsCollector()
    metrics.inc("events_routed_total", 3)
    server = HealthServer(port=port, metrics=metrics)
    await server.start()
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
            r = await client.get("/health")
            assert r.status_code == 503
            assert r.json()["status"] == "degraded"

            server.update_status(
                [_sub("stories-realtime", "connected")], offline=False, cached_items=2
            )
            r = await client.get("/health")
            assert r.status_code == 200
            assert r.json()["cached_items"] == 2

            r = await client.get("/metrics")
            assert "newstack_events_routed_total 3" in r.text
    finally:
        await server.stop()
