"""Canonical event contracts.

``RawRecord`` is what the stream delivers, ``Event`` is what the normalizer
produces and what the fan-out channel carries. Storage rows are plain dicts
produced from an ``Event`` by :mod:`pipeline.storage_cast`.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any


class HttpMethod(str, enum.Enum):
    """Collector request variant; selects the normalization routine."""

    GET = "get"
    POST = "post"

    @classmethod
    def from_envelope(cls, value: Any) -> HttpMethod:
        # Anything that is not explicitly a GET pixel is a POST beacon.
        if str(value or "").strip().lower() == cls.GET.value:
            return cls.GET
        return cls.POST


class CheckpointDecision(str, enum.Enum):
    """Returned to the stream consumer after every delivery."""

    CHECKPOINT = "checkpoint"
    CONTINUE = "continue"

    @property
    def should_checkpoint(self) -> bool:
        return self is CheckpointDecision.CHECKPOINT


@dataclass(frozen=True)
class RawRecord:
    """One Kinesis record as delivered to the coordinator."""

    sequence_number: str
    partition_key: str
    payload: bytes


@dataclass(frozen=True)
class Event:
    """Canonical tracking event.

    ``id`` is the Kinesis sequence number and the storage primary key. Every
    other field is optional.
    """

    id: str
    received_at: str | None = None
    ts: str | None = None
    path: str | None = None
    url: str | None = None
    ip: str | None = None
    referrer: str | None = None
    user_agent: str | None = None
    evt_type: str | None = None
    args: Mapping[str, Any] | None = None
    form: Mapping[str, Any] | None = None
    user_data: Mapping[str, Any] | None = None
    cookies: Mapping[str, str] = field(default_factory=dict)
    orig_data: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Column-keyed mapping (field names match the ``events`` table)."""
        return asdict(self)


EVENT_COLUMNS: tuple[str, ...] = (
    "id",
    "received_at",
    "ts",
    "path",
    "url",
    "ip",
    "referrer",
    "user_agent",
    "evt_type",
    "args",
    "form",
    "user_data",
    "cookies",
    "orig_data",
)
