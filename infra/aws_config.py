"""AWS SDK configuration for the Kinesis consumer.

Credentials are passed explicitly into a :class:`boto3.session.Session`; nothing
here touches process-wide credential state.
"""

from __future__ import annotations

from typing import Any

import boto3  # type: ignore[import-untyped]
from botocore.config import Config

from infra.config import StreamConfig
from version import ENGINE_NAME, ENGINE_VERSION


def sdk_config(cfg: StreamConfig) -> Config:
    """Return the botocore client config derived from stream settings."""
    return Config(
        region_name=cfg.region,
        retries={"max_attempts": int(cfg.max_retries), "mode": "adaptive"},
        user_agent_extra=f"{ENGINE_NAME}/{ENGINE_VERSION}",
        connect_timeout=int(cfg.connect_timeout),
        read_timeout=int(cfg.timeout),
    )


def build_session(cfg: StreamConfig) -> boto3.session.Session:
    """Build a session from explicit credentials, or the default chain when unset."""
    kwargs: dict[str, Any] = {"region_name": cfg.region}
    if cfg.access_key_id and cfg.secret_access_key:
        kwargs["aws_access_key_id"] = cfg.access_key_id
        kwargs["aws_secret_access_key"] = cfg.secret_access_key
    return boto3.session.Session(**kwargs)


def kinesis_client(cfg: StreamConfig, *, session: boto3.session.Session | None = None) -> Any:
    """Return a Kinesis client for the configured region/endpoint."""
    sess = session or build_session(cfg)
    return sess.client("kinesis", endpoint_url=cfg.endpoint_url, config=sdk_config(cfg))
