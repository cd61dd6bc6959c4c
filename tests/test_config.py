"""Unit tests for centralized configuration parsing and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from infra.config import Settings, ValidationError, clear_settings_cache, get_settings


def test_settings_defaults_match_deployment_constants() -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")

    assert settings.pipeline.batch_size == 1_000_000
    assert settings.pipeline.flush_interval_seconds == 180.0
    assert settings.pipeline.max_id_lookup == 10_000
    assert settings.stream.app_name == "kinesis-sample-consumer0"
    assert settings.stream.region == "eu-west-1"
    assert settings.api.port == 8989
    assert settings.db.table == "events"


def test_settings_reads_flat_env_keys() -> None:
    """Flat env keys should map to nested settings models."""
    env = {
        "DB_URL": "postgres://flat/db",
        "DB_POOL_MAXCONN": "15",
        "BATCH_SIZE": "500",
        "FLUSH_INTERVAL": "30",
        "KINESIS_STREAM": "tracking",
        "AWS_REGION": "us-east-1",
        "AWS_ACCESS_KEY_ID": "AKIA",
        "AWS_SECRET_ACCESS_KEY": "secret",
        "REDIS_URL": "redis://cache:6379/1",
        "PUBSUB_CHANNEL": "tracking-events",
        "PORT": "7001",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.db.url == "postgres://flat/db"
    assert settings.db.pool_maxconn == 15
    assert settings.pipeline.batch_size == 500
    assert settings.pipeline.flush_interval_seconds == 30.0
    assert settings.stream.stream_name == "tracking"
    assert settings.stream.region == "us-east-1"
    assert settings.stream.access_key_id == "AKIA"
    assert settings.stream.secret_access_key == "secret"
    assert settings.pubsub.redis_url == "redis://cache:6379/1"
    assert settings.pubsub.channel == "tracking-events"
    assert settings.api.port == 7001


def test_settings_nested_keys_win_over_flat_keys() -> None:
    env = {
        "PIPELINE__BATCH_SIZE": "11",
        "BATCH_SIZE": "99",
        "STREAM__START_POSITION": "LATEST",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.pipeline.batch_size == 11
    assert settings.stream.start_position == "latest"


def test_settings_reads_dotenv_file_under_process_env(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text('# local\nDB_URL="postgres://dotenv/db"\nBATCH_SIZE=7\n', encoding="utf-8")

    settings = Settings.from_env(env={"BATCH_SIZE": "8"}, env_file=str(env_file))

    assert settings.db.url == "postgres://dotenv/db"
    assert settings.pipeline.batch_size == 8


@pytest.mark.parametrize(
    "env",
    [
        {"DB_POOL_MAXCONN": "0"},
        {"BATCH_SIZE": "0"},
        {"FLUSH_INTERVAL": "-1"},
        {"DB_TABLE": "events; drop table x"},
    ],
)
def test_settings_invalid_values_raise_validation_error(env: dict[str, str]) -> None:
    with pytest.raises(ValidationError):
        Settings.from_env(env=env, env_file=".missing.env")


def test_unknown_start_position_falls_back_to_trim_horizon() -> None:
    settings = Settings.from_env(env={"KINESIS_START_POSITION": "yesterday"}, env_file=".missing.env")
    assert settings.stream.start_position == "trim_horizon"


def test_get_settings_reload_rebuilds_cache(monkeypatch: Any) -> None:
    """Reload should rebuild cached settings from current process env."""
    clear_settings_cache()
    monkeypatch.setenv("DB_URL", "postgres://first/db")
    first = get_settings(reload=True)

    monkeypatch.setenv("DB_URL", "postgres://second/db")
    cached = get_settings()
    second = get_settings(reload=True)

    assert first.db.url == "postgres://first/db"
    assert cached is first
    assert second.db.url == "postgres://second/db"
