"""Shared batch buffer and time/size flush policy.

Every shard thread appends into one :class:`Accumulator`. The lock covers
appends and the check-snapshot-clear step together, so an event offered
while another thread drains lands either in that snapshot or in the next
one, never in both and never in neither.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from contracts.events import Event


@dataclass(frozen=True)
class FlushPolicy:
    """Flush when the batch is non-empty and either limit has been reached."""

    size_threshold: int
    interval_seconds: float

    def __post_init__(self) -> None:
        if int(self.size_threshold) < 1:
            raise ValueError("size_threshold must be >= 1")
        if float(self.interval_seconds) < 0:
            raise ValueError("interval_seconds must be >= 0")

    def is_due(self, *, item_count: int, last_flush_at: float, now: float) -> bool:
        if item_count <= 0:
            return False
        return now >= last_flush_at + self.interval_seconds or item_count >= self.size_threshold


class Accumulator:
    """Mutex-guarded, append-only batch of events pending flush."""

    def __init__(self, policy: FlushPolicy, *, clock: Callable[[], float] = time.time) -> None:
        self.policy = policy
        self._clock = clock
        self._lock = threading.Lock()
        self._items: list[Event] = []
        self._last_flush_at = clock()

    @property
    def item_count(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def last_flush_at(self) -> float:
        with self._lock:
            return self._last_flush_at

    def offer(self, event: Event) -> int:
        """Append one event; returns the batch size after the append."""
        with self._lock:
            self._items.append(event)
            return len(self._items)

    def offer_all(self, events: Iterable[Event]) -> int:
        with self._lock:
            self._items.extend(events)
            return len(self._items)

    def should_flush(self) -> bool:
        with self._lock:
            return self.policy.is_due(
                item_count=len(self._items),
                last_flush_at=self._last_flush_at,
                now=self._clock(),
            )

    def drain_if_due(self, *, force: bool = False) -> list[Event] | None:
        """Snapshot and clear the batch when the policy fires.

        Returns ``None`` when no flush is due. ``force`` drains any non-empty
        batch regardless of thresholds (used on shutdown).
        """
        with self._lock:
            now = self._clock()
            if force:
                due = bool(self._items)
            else:
                due = self.policy.is_due(
                    item_count=len(self._items),
                    last_flush_at=self._last_flush_at,
                    now=now,
                )
            if not due:
                return None
            snapshot = self._items
            self._items = []
            self._last_flush_at = now
            return snapshot

    def snapshot_and_clear(self) -> list[Event]:
        """Unconditionally drain the batch (empty list when nothing is pending)."""
        return self.drain_if_due(force=True) or []
