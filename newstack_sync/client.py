"""
Sync client orchestrator.

Wires storage, the change-feed connection, routing, notifications, the offline
cache and audio cues together. Handles lifecycle: startup, shutdown, signal
handling and periodic health updates.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Callable

import structlog

from .audio import AudioCueEngine, AudioSink, NullSink, WavFileSink
from .cache import ArticleCacheWorker, OfflineCacheStore
from .config import SyncConfig
from .connection import ConnectionManager, Subscription
from .events import Operation
from .feed import StoryFeedMonitor, standard_topics
from .health import HealthServer
from .metrics import MetricsCollector
from .notifications import (
    ConsoleToaster,
    NativeNotifier,
    NotificationDecisionEngine,
    Toaster,
)
from .router import ChangeEventRouter
from .storage import LocalStorage
from .transport import ChangeStream, SSEChangeStream

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
HEALTH_INTERVAL = 30.0


def _default_sink(config: SyncConfig) -> AudioSink:
    if config.audio.sink == "wav":
        return WavFileSink(config.audio.wav_dir)
    return NullSink()


class SyncClient:
    """
    One reader session: keeps the standard topics open and feeds the
    notification engine, story feed monitor and offline cache.
    """

    def __init__(
        self,
        config: SyncConfig,
        stream: ChangeStream | None = None,
        toaster: Toaster | None = None,
        notifier: NativeNotifier | None = None,
        audio_sink: AudioSink | None = None,
        focus_app: Callable[[], None] | None = None,
    ):
        self._config = config
        self.metrics = MetricsCollector()
        self.storage = LocalStorage(config.storage.db_path, config.storage.quota_bytes)
        self._stream = stream or SSEChangeStream(
            url=config.realtime.url,
            api_key=config.realtime.api_key,
            verify_tls=config.realtime.verify_tls,
        )

        self.audio = AudioCueEngine(
            sink=audio_sink or _default_sink(config),
            storage=self.storage,
            sample_rate=config.audio.sample_rate,
        )
        self.router = ChangeEventRouter(metrics=self.metrics)
        self.notifications = NotificationDecisionEngine(
            toaster=toaster or ConsoleToaster(),
            notifier=notifier,
            audio=self.audio,
            focus_app=focus_app,
            config=config.notifications,
            metrics=self.metrics,
        )
        self.feed = StoryFeedMonitor()
        self._worker = ArticleCacheWorker(self.storage, config.cache.worker_queue_size)
        self.cache = OfflineCacheStore(
            self.storage,
            max_items=config.cache.max_items,
            worker=self._worker,
            settle_seconds=config.cache.sync_settle_seconds,
            metrics=self.metrics,
        )
        self.connections = ConnectionManager.from_config(
            self._stream,
            self.router.route_raw,
            config.reconnect,
            metrics=self.metrics,
        )
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self.metrics,
        )
        self._subscriptions: list[Subscription] = []
        self._running = False
        self._started = False
        self._shutdown_event = asyncio.Event()

        self._wire()

    @property
    def running(self) -> bool:
        return self._running

    def _wire(self) -> None:
        breaking = self._config.notifications.breaking_table
        engine = self.notifications
        self.router.register(breaking, Operation.INSERT, engine.on_event)
        self.router.register(breaking, Operation.UPDATE, engine.on_event)
        self.router.register("stories", Operation.INSERT, engine.on_event)
        self.router.register("stories", Operation.UPDATE, engine.on_event)
        self.feed.attach(self.router)
        self.connections.on_status(self.feed.on_subscription_status)

    async def start(self) -> None:
        """Open storage, restore persisted state and open the standard topics."""
        log.info("client.starting", url=self._config.realtime.url)
        self._started = True

        await self.storage.open()
        await self.cache.load()
        await self.audio.load()
        await self._worker.start()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "client.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except Exception as exc:
                log.warning("client.health_start_failed", error=str(exc))

        topics = standard_topics(
            self._config.realtime.schema_name,
            self._config.notifications.breaking_table,
        )
        for topic, filters in topics.items():
            sub = await self.connections.open(topic, filters)
            self._subscriptions.append(sub)

        self._running = True
        log.info("client.started", topics=len(self._subscriptions))

    async def reconnect(self) -> None:
        """Manually re-open every topic, e.g. after retries were exhausted."""
        topics = standard_topics(
            self._config.realtime.schema_name,
            self._config.notifications.breaking_table,
        )
        self._subscriptions = [
            await self.connections.open(topic, filters) for topic, filters in topics.items()
        ]

    async def stop(self) -> None:
        """Release everything start() acquired, including after a partial start."""
        if not self._started:
            return
        self._started = False
        self._running = False
        log.info("client.stopping")

        await self.connections.close_all()
        self._subscriptions.clear()
        await self._stream.aclose()
        await self.router.drain()
        self.notifications.close()

        await self._worker.stop()
        await self.audio.flush()
        await self._health.stop()
        await self.storage.close()

        log.info("client.stopped")

    async def run_forever(self) -> None:
        """Run until a shutdown signal arrives."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        try:
            await self.start()
            while not self._shutdown_event.is_set():
                self.update_health()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=HEALTH_INTERVAL
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    def update_health(self) -> dict[str, Any]:
        self._health.update_status(
            self.connections.statuses(),
            offline=self.cache.is_offline,
            cached_items=self.cache.cached_count,
        )
        return self._health.snapshot()
