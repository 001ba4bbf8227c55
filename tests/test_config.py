"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from newstack_sync.config import SyncConfig, load_config


def test_load_config_from_yaml(tmp_path):
    config_data = {
        "realtime": {"url": "https://demo.supabase.co", "schema": "news"},
        "reconnect": {"max_retries": 5},
        "notifications": {"audio_cue": "error"},
        "storage": {"quota_bytes": None},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))

    cfg = load_config(path)
    assert cfg.realtime.url == "https://demo.supabase.co"
    assert cfg.realtime.schema_name == "news"
    assert cfg.reconnect.max_retries == 5
    assert cfg.reconnect.base_delay_ms == 1000
    assert cfg.notifications.audio_cue == "error"
    assert cfg.storage.quota_bytes is None


def test_load_config_defaults():
    cfg = SyncConfig()
    assert cfg.reconnect.base_delay_ms == 1000
    assert cfg.reconnect.max_delay_ms == 10000
    assert cfg.reconnect.max_retries == 3
    assert cfg.cache.max_items == 20
    assert cfg.notifications.auto_dismiss_seconds == 10.0
    assert cfg.metrics.port == 9091


def test_api_key_from_env(monkeypatch):
    monkeypatch.setenv("NEWSTACK_ANON_KEY", "anon-123")
    assert SyncConfig().realtime.api_key == "anon-123"


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        SyncConfig.model_validate({"cache": {"max_items": 0}})
    with pytest.raises(ValidationError):
        SyncConfig.model_validate({"notifications": {"audio_cue": "fanfare"}})


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")
