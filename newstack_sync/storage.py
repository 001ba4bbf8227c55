"""
SQLite-backed local storage.

Stores:
- local_storage: string key → JSON value (cache envelope, sync status, mute flag,
  session id, PWA dismissal, last known location)
- saved_articles: article_id → JSON article, the secondary offline article cache

Absent keys always read back as the caller's default. Writes are checked
against an optional byte quota so the offline cache can degrade gracefully.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

import aiosqlite
import structlog

log = structlog.get_logger()

OFFLINE_CACHE_KEY = "newstack_offline_stories"
SYNC_STATUS_KEY = "newstack_sync_status"
MUTE_KEY = "newstack_audio_muted"
SESSION_ID_KEY = "newstack_session_id"
PWA_DISMISSED_KEY = "newstack_pwa_dismissed"
LAST_LOCATION_KEY = "newstack_last_location"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS local_storage (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS saved_articles (
    article_id TEXT PRIMARY KEY,
    body       TEXT NOT NULL,
    saved_at   TEXT NOT NULL
);
"""


class StorageError(Exception):
    """Any failure reading or writing local storage."""


class QuotaExceededError(StorageError):
    """A write would push local storage over its byte quota."""


class LocalStorage:
    """Async key/value store with JSON values and an optional byte quota."""

    def __init__(self, db_path: str, quota_bytes: int | None = None):
        self._db_path = db_path
        self._quota_bytes = quota_bytes
        self._db: aiosqlite.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("local storage is not open")
        return self._db

    # --- Keys ---

    async def get_raw(self, key: str) -> str | None:
        db = self._conn()
        try:
            cursor = await db.execute(
                "SELECT value FROM local_storage WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
        return row["value"] if row else None

    async def get(self, key: str, default: Any = None) -> Any:
        raw = await self.get_raw(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            log.warning("storage.corrupt_value", key=key, size=len(raw))
            return default

    async def set(self, key: str, value: Any) -> None:
        db = self._conn()
        encoded = json.dumps(value, separators=(",", ":"))
        await self._check_quota(key, len(encoded.encode("utf-8")))
        now = datetime.now(timezone.utc).isoformat()
        try:
            await db.execute(
                """INSERT INTO local_storage (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value=?, updated_at=?""",
                (key, encoded, now, encoded, now),
            )
            await db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc

    async def remove(self, key: str) -> None:
        db = self._conn()
        try:
            await db.execute("DELETE FROM local_storage WHERE key = ?", (key,))
            await db.commit()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc

    async def used_bytes(self, exclude_key: str | None = None) -> int:
        db = self._conn()
        try:
            cursor = await db.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB))), 0) AS used "
                "FROM local_storage WHERE key IS NOT ?",
                (exclude_key,),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
        return int(row["used"])

    async def _check_quota(self, key: str, size: int) -> None:
        if self._quota_bytes is None:
            return
        used = await self.used_bytes(exclude_key=key)
        if used + size > self._quota_bytes:
            raise QuotaExceededError(
                f"writing {key} ({size} bytes) exceeds quota of {self._quota_bytes} bytes"
            )

    # --- Saved Articles ---

    async def save_article(self, article: dict[str, Any]) -> None:
        db = self._conn()
        now = datetime.now(timezone.utc).isoformat()
        await db.execute(
            """INSERT OR REPLACE INTO saved_articles (article_id, body, saved_at)
               VALUES (?, ?, ?)""",
            (str(article["id"]), json.dumps(article), now),
        )
        await db.commit()

    async def remove_article(self, article_id: str) -> None:
        db = self._conn()
        await db.execute(
            "DELETE FROM saved_articles WHERE article_id = ?", (article_id,)
        )
        await db.commit()

    async def list_articles(self) -> list[dict[str, Any]]:
        db = self._conn()
        cursor = await db.execute(
            "SELECT body FROM saved_articles ORDER BY saved_at DESC"
        )
        rows = await cursor.fetchall()
        return [json.loads(r["body"]) for r in rows]
