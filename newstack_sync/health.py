"""
Health and metrics HTTP server.

Exposes:
- GET /health: subscription statuses, offline flag and cache size as JSON.
  Answers 503 while degraded so probes can alert on silent staleness.
- GET /metrics: Prometheus text format
"""

from __future__ import annotations

from typing import Any

from aiohttp import web

from .metrics import MetricsCollector


class HealthServer:
    """Local HTTP endpoint reporting sync client health."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9091,
        metrics: MetricsCollector | None = None,
    ):
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._subscriptions: list[dict[str, Any]] = []
        self._offline = False
        self._cached_items = 0
        self._runner: web.AppRunner | None = None

    def update_status(
        self,
        subscriptions: list[dict[str, Any]],
        offline: bool,
        cached_items: int,
    ) -> None:
        self._subscriptions = subscriptions
        self._offline = offline
        self._cached_items = cached_items

    def snapshot(self) -> dict[str, Any]:
        connected = [s for s in self._subscriptions if s["status"] == "connected"]
        exhausted = [s["topic"] for s in self._subscriptions if s.get("retries_exhausted")]
        healthy = (
            bool(self._subscriptions)
            and len(connected) == len(self._subscriptions)
            and not self._offline
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "subscriptions": self._subscriptions,
            "connected": len(connected),
            "retries_exhausted": exhausted,
            "offline": self._offline,
            "cached_items": self._cached_items,
            "uptime_seconds": round(self._metrics.uptime_seconds, 1),
        }

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        body = self.snapshot()
        return web.json_response(body, status=200 if body["status"] == "healthy" else 503)

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
