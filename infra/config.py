"""Centralized application configuration with schema validation.

This module is intentionally compatibility-first:
- Supports flat environment names (for example ``DB_URL`` or ``BATCH_SIZE``).
- Supports nested names (for example ``PIPELINE__BATCH_SIZE``).
- Optionally reads a local ``.env`` file before process env values.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _normalize_level(value: object) -> str:
    text = str(value or "").strip().upper()
    if text in _LOG_LEVELS:
        return text
    return "INFO"


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    model_config = ConfigDict(frozen=True)

    url: str | None = Field(default=None, description="Postgres connection URL")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)
    table: str = Field(default="events", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")


class PipelineConfig(BaseModel):
    """Accumulator flush thresholds."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=1_000_000, ge=1)
    flush_interval_seconds: float = Field(default=180.0, ge=0.0)
    max_id_lookup: int = Field(default=10_000, ge=1)


class StreamConfig(BaseModel):
    """Kinesis consumer settings."""

    model_config = ConfigDict(frozen=True)

    app_name: str = Field(default="kinesis-sample-consumer0")
    stream_name: str | None = Field(default=None)
    region: str = Field(default="eu-west-1")
    endpoint_url: str | None = Field(default=None)
    access_key_id: str | None = Field(default=None)
    secret_access_key: str | None = Field(default=None)
    start_position: str = Field(default="trim_horizon")
    poll_interval_seconds: float = Field(default=1.0, ge=0.0)
    records_limit: int = Field(default=1000, ge=1, le=10_000)
    max_retries: int = Field(default=10, ge=1, le=25)
    timeout: int = Field(default=60, ge=1, le=300)
    connect_timeout: int = Field(default=5, ge=1, le=60)

    @field_validator("start_position", mode="before")
    @classmethod
    def _normalize_start_position(cls, value: object) -> str:
        text = str(value or "").strip().lower()
        if text in {"trim_horizon", "latest"}:
            return text
        return "trim_horizon"

    @field_validator("stream_name", "endpoint_url", "access_key_id", "secret_access_key", mode="before")
    @classmethod
    def _normalize_optional_text(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class PubSubConfig(BaseModel):
    """Redis fan-out channel settings."""

    model_config = ConfigDict(frozen=True)

    redis_url: str = Field(default="redis://127.0.0.1:6379/0")
    channel: str = Field(default="events", min_length=1)
    socket_timeout: float = Field(default=5.0, gt=0.0)


class APIConfig(BaseModel):
    """Status endpoint runtime configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8989, ge=1, le=65535)


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return _normalize_level(value)


class DbMetricsConfig(BaseModel):
    """DB query instrumentation settings."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _normalize_metrics_enabled(cls, value: object) -> bool:
        if value is None:
            return True
        text = str(value).strip().lower()
        if text in {"0", "false", "no", "off"}:
            return False
        return True

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _normalize_threshold_ms(cls, value: object) -> float:
        if value is None:
            return 1000.0
        text = str(value).strip()
        if text == "":
            return 1000.0
        try:
            parsed = float(text)
        except (TypeError, ValueError):
            return 1000.0
        return max(0.0, parsed)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    pubsub: PubSubConfig = Field(default_factory=PubSubConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _section(env: Mapping[str, str], spec: Mapping[str, tuple[str, ...]]) -> dict[str, str]:
    """Resolve one settings section, dropping keys that are not set."""
    out: dict[str, str] = {}
    for field_name, keys in spec.items():
        value = _first_non_empty(env, *keys)
        if value is not None:
            out[field_name] = value
    return out


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    db = {
        "url": ("DB__URL", "DB_URL"),
        "pool_maxconn": ("DB__POOL_MAXCONN", "DB_POOL_MAXCONN"),
        "connect_timeout": ("DB__CONNECT_TIMEOUT", "DB_CONNECT_TIMEOUT"),
        "table": ("DB__TABLE", "DB_TABLE"),
    }
    pipeline = {
        "batch_size": ("PIPELINE__BATCH_SIZE", "BATCH_SIZE"),
        "flush_interval_seconds": ("PIPELINE__FLUSH_INTERVAL_SECONDS", "FLUSH_INTERVAL"),
        "max_id_lookup": ("PIPELINE__MAX_ID_LOOKUP", "MAX_ID_LOOKUP"),
    }
    stream = {
        "app_name": ("STREAM__APP_NAME", "APP_NAME"),
        "stream_name": ("STREAM__STREAM_NAME", "KINESIS_STREAM"),
        "region": ("STREAM__REGION", "AWS_REGION", "AWS_DEFAULT_REGION"),
        "endpoint_url": ("STREAM__ENDPOINT_URL", "KINESIS_ENDPOINT_URL", "AWS_ENDPOINT_URL"),
        "access_key_id": ("STREAM__ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID"),
        "secret_access_key": ("STREAM__SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"),
        "start_position": ("STREAM__START_POSITION", "KINESIS_START_POSITION"),
        "poll_interval_seconds": ("STREAM__POLL_INTERVAL_SECONDS", "KINESIS_POLL_INTERVAL"),
        "records_limit": ("STREAM__RECORDS_LIMIT", "KINESIS_RECORDS_LIMIT"),
        "max_retries": ("STREAM__MAX_RETRIES", "AWS_MAX_RETRIES"),
        "timeout": ("STREAM__TIMEOUT", "AWS_TIMEOUT"),
        "connect_timeout": ("STREAM__CONNECT_TIMEOUT", "AWS_CONNECT_TIMEOUT"),
    }
    pubsub = {
        "redis_url": ("PUBSUB__REDIS_URL", "REDIS_URL"),
        "channel": ("PUBSUB__CHANNEL", "PUBSUB_CHANNEL"),
        "socket_timeout": ("PUBSUB__SOCKET_TIMEOUT", "REDIS_SOCKET_TIMEOUT"),
    }
    api = {
        "host": ("API__HOST", "API_HOST", "HOST"),
        "port": ("API__PORT", "API_PORT", "PORT"),
    }
    logging_settings = {
        "level": ("LOGGING__LEVEL", "EVENTSINK_LOG_LEVEL"),
        "json_logs": ("LOGGING__JSON_LOGS", "EVENTSINK_LOG_JSON"),
        "override_root_handlers": ("LOGGING__OVERRIDE_ROOT_HANDLERS", "EVENTSINK_LOG_OVERRIDE"),
    }
    db_metrics = {
        "metrics_enabled": ("DB_METRICS__ENABLED", "DB_QUERY_METRICS_ENABLED"),
        "slow_query_threshold_ms": ("DB_METRICS__SLOW_QUERY_THRESHOLD_MS", "DB_SLOW_QUERY_THRESHOLD_MS"),
    }
    return {
        "db": _section(env, db),
        "pipeline": _section(env, pipeline),
        "stream": _section(env, stream),
        "pubsub": _section(env, pubsub),
        "api": _section(env, api),
        "logging": _section(env, logging_settings),
        "db_metrics": _section(env, db_metrics),
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "APIConfig",
    "DatabaseConfig",
    "DbMetricsConfig",
    "LoggingSettings",
    "PipelineConfig",
    "PubSubConfig",
    "Settings",
    "StreamConfig",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
