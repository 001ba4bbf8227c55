"""
Configuration loading and validation.

Loads sync client configuration from YAML file with environment variable
resolution for secrets (the realtime API key is never stored in config files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


class RealtimeConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "NEWSTACK_ANON_KEY"
    schema_name: str = Field(default="public", alias="schema")
    verify_tls: bool = True

    model_config = {"populate_by_name": True}

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class ReconnectConfig(BaseModel):
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    max_retries: int = 3

    @field_validator("base_delay_ms", "max_delay_ms", "max_retries")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


class NotificationsConfig(BaseModel):
    breaking_table: str = "breaking_news"
    title: str = "🔴 NEWSTACK Breaking News"
    icon: str = "/logo.svg"
    auto_dismiss_seconds: float = 10.0
    toast_duration_ms: int = 8000
    audio_cue: Literal["success", "error", "none"] = "success"


class CacheConfig(BaseModel):
    max_items: int = 20
    sync_settle_seconds: float = 1.0
    worker_queue_size: int = 100

    @field_validator("max_items")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_items must be >= 1")
        return v


class StorageConfig(BaseModel):
    db_path: str = "./data/newstack_sync.db"
    quota_bytes: int | None = 5 * 1024 * 1024


class AudioConfig(BaseModel):
    sample_rate: int = 44100
    sink: Literal["wav"] | None = None
    wav_dir: str = "./data/cues"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9091


class SyncConfig(BaseModel):
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> SyncConfig:
    """Load and validate sync client configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return SyncConfig.model_validate(raw)
