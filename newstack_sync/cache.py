"""
Offline story cache.

The cache is a single envelope ``{"items": [...], "cachedAt": iso8601}`` kept in
local storage and replaced wholesale on every write. It holds at most
MAX_CACHED items, in the order the caller supplied them (newest first).
Persistence failures are reported as a False return, never raised, and leave
the in-memory view untouched.

Every cached item is also offered to the ArticleCacheWorker, which keeps a
per-article copy in the saved_articles table on a best-effort basis.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping

import structlog

from .metrics import MetricsCollector
from .storage import OFFLINE_CACHE_KEY, SYNC_STATUS_KEY, LocalStorage, StorageError

log = structlog.get_logger()

MAX_CACHED = 20
SYNC_SETTLE_SECONDS = 1.0
WORKER_QUEUE_SIZE = 100


@dataclass(frozen=True)
class CacheEnvelope:
    items: tuple[dict[str, Any], ...] = ()
    cached_at: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.cached_at is None and not self.items

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": list(self.items),
            "cachedAt": self.cached_at.isoformat() if self.cached_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CacheEnvelope:
        items = data.get("items", data.get("stories"))
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise ValueError("envelope items must be a list of objects")
        cached_at = data.get("cachedAt")
        if not isinstance(cached_at, str):
            raise ValueError("envelope has no cachedAt timestamp")
        return cls(items=tuple(items), cached_at=datetime.fromisoformat(cached_at))


EMPTY_ENVELOPE = CacheEnvelope()


class ArticleCacheWorker:
    """Background writer for the per-article secondary cache."""

    def __init__(self, storage: LocalStorage, queue_size: int = WORKER_QUEUE_SIZE):
        self._storage = storage
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def offer(self, article: dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(article)
        except asyncio.QueueFull:
            log.debug("cache.worker_queue_full", article=article.get("id"))
            return False
        return True

    async def join(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            article = await self._queue.get()
            try:
                await self._storage.save_article(article)
            except Exception as exc:
                log.debug("cache.worker_save_failed", article=article.get("id"), error=str(exc))
            finally:
                self._queue.task_done()


class OfflineCacheStore:
    """Bounded, persisted cache of recently fetched stories."""

    def __init__(
        self,
        storage: LocalStorage,
        max_items: int = MAX_CACHED,
        worker: ArticleCacheWorker | None = None,
        settle_seconds: float = SYNC_SETTLE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: MetricsCollector | None = None,
    ):
        self._storage = storage
        self._max_items = max_items
        self._worker = worker
        self._settle_seconds = settle_seconds
        self._sleep = sleep
        self._metrics = metrics
        self._envelope = EMPTY_ENVELOPE
        self.is_offline = False
        self.pending_sync = False
        self.is_syncing = False
        self.last_synced_at: datetime | None = None

    @property
    def cached_items(self) -> tuple[dict[str, Any], ...]:
        return self._envelope.items

    @property
    def last_cached(self) -> datetime | None:
        return self._envelope.cached_at

    @property
    def cached_count(self) -> int:
        return len(self._envelope.items)

    @property
    def has_cached_items(self) -> bool:
        return bool(self._envelope.items)

    async def load(self) -> None:
        """Populate the in-memory view from local storage."""
        self._envelope = await self.read()
        try:
            status = await self._storage.get(SYNC_STATUS_KEY)
        except StorageError as exc:
            log.warning("cache.sync_status_unreadable", error=str(exc))
            status = None
        if isinstance(status, dict):
            self.pending_sync = bool(status.get("pendingSync", False))
            last = status.get("lastSyncedAt")
            if isinstance(last, str):
                try:
                    self.last_synced_at = datetime.fromisoformat(last)
                except ValueError:
                    self.last_synced_at = None
        self._update_gauge()
        log.info("cache.loaded", items=self.cached_count, pending_sync=self.pending_sync)

    async def cache(self, items: Iterable[Mapping[str, Any]]) -> bool:
        kept: list[dict[str, Any]] = []
        try:
            for item in items:
                if len(kept) >= self._max_items:
                    break
                kept.append(dict(item))
            envelope = CacheEnvelope(items=tuple(kept), cached_at=datetime.now(timezone.utc))
            await self._storage.set(OFFLINE_CACHE_KEY, envelope.to_dict())
        except (StorageError, TypeError, ValueError) as exc:
            log.error("cache.write_failed", items=len(kept), error=str(exc))
            return False

        self._envelope = envelope
        self._update_gauge()
        log.debug("cache.written", items=len(kept))

        if self._worker is not None:
            for item in kept:
                if item.get("id") is not None:
                    self._worker.offer(item)
        return True

    async def read(self) -> CacheEnvelope:
        try:
            data = await self._storage.get(OFFLINE_CACHE_KEY)
        except StorageError as exc:
            log.warning("cache.read_failed", error=str(exc))
            return EMPTY_ENVELOPE
        if data is None:
            return EMPTY_ENVELOPE
        if not isinstance(data, Mapping):
            log.warning("cache.corrupt_envelope", error="not an object")
            return EMPTY_ENVELOPE
        try:
            return CacheEnvelope.from_dict(data)
        except ValueError as exc:
            log.warning("cache.corrupt_envelope", error=str(exc))
            return EMPTY_ENVELOPE

    async def clear(self) -> bool:
        try:
            await self._storage.remove(OFFLINE_CACHE_KEY)
            await self._storage.remove(SYNC_STATUS_KEY)
        except StorageError as exc:
            log.error("cache.clear_failed", error=str(exc))
            return False
        self._envelope = EMPTY_ENVELOPE
        self.pending_sync = False
        self._update_gauge()
        log.info("cache.cleared")
        return True

    async def size_in_bytes(self) -> int:
        try:
            raw = await self._storage.get_raw(OFFLINE_CACHE_KEY)
        except StorageError:
            return 0
        return len(raw.encode("utf-8")) if raw else 0

    # --- Connectivity ---

    async def mark_offline(self) -> None:
        self.is_offline = True
        self.pending_sync = True
        last = self.last_synced_at or datetime.now(timezone.utc)
        await self._save_sync_status(last, pending=True)
        log.info("cache.offline")

    async def mark_online(self) -> None:
        self.is_offline = False
        if not self.pending_sync:
            return
        self.is_syncing = True
        try:
            await self._sleep(self._settle_seconds)
        finally:
            self.is_syncing = False
        self.pending_sync = False
        self.last_synced_at = datetime.now(timezone.utc)
        await self._save_sync_status(self.last_synced_at, pending=False)
        log.info("cache.synced", last_synced_at=self.last_synced_at.isoformat())

    async def _save_sync_status(self, last_synced_at: datetime, pending: bool) -> None:
        try:
            await self._storage.set(
                SYNC_STATUS_KEY,
                {"lastSyncedAt": last_synced_at.isoformat(), "pendingSync": pending},
            )
        except StorageError as exc:
            log.warning("cache.sync_status_write_failed", error=str(exc))

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_gauge("cached_items", self.cached_count)
