"""Fan-out of persisted events onto a Redis pub/sub channel.

Publishing is fire-and-forget and best effort: a failed publish is logged,
counted, and not retried.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

import redis

from contracts.errors import PublishError
from contracts.events import Event
from infra.config import PubSubConfig

logger = logging.getLogger(__name__)


def event_to_json(event: Event) -> str:
    """Serialize the canonical event (not the storage row)."""
    return json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str)


class RedisPublisher:
    """Publishes JSON events on one named channel."""

    def __init__(self, client: Any, channel: str) -> None:
        if not channel:
            raise ValueError("channel must be non-empty")
        self._client = client
        self.channel = channel

    @classmethod
    def from_config(cls, cfg: PubSubConfig) -> RedisPublisher:
        client = redis.Redis.from_url(
            cfg.redis_url,
            socket_timeout=cfg.socket_timeout,
            socket_connect_timeout=cfg.socket_timeout,
        )
        return cls(client, cfg.channel)

    def publish(self, event: Event) -> int:
        """Publish one event; returns the number of subscribers that received it."""
        try:
            return int(self._client.publish(self.channel, event_to_json(event)) or 0)
        except (redis.RedisError, TypeError, ValueError) as exc:
            raise PublishError(event.id, f"publish on {self.channel!r} failed: {exc}") from exc

    def publish_all(self, events: Iterable[Event]) -> tuple[int, int]:
        """Publish each event; returns ``(published, failed)``."""
        published = 0
        failed = 0
        for event in events:
            try:
                self.publish(event)
            except PublishError as exc:
                failed += 1
                logger.warning(
                    "Fan-out failed channel=%s id=%s cause=%s",
                    self.channel,
                    exc.event_id,
                    exc.__cause__.__class__.__name__,
                )
                continue
            published += 1
        return published, failed

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
