"""Flush policy and accumulator behaviour, including concurrent offers."""

from __future__ import annotations

import threading

import pytest

from contracts.events import Event
from pipeline.accumulator import Accumulator, FlushPolicy


class _Clock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _events(n: int, prefix: str = "e") -> list[Event]:
    return [Event(id=f"{prefix}-{i}") for i in range(n)]


def test_policy_rejects_invalid_thresholds() -> None:
    with pytest.raises(ValueError):
        FlushPolicy(size_threshold=0, interval_seconds=60)
    with pytest.raises(ValueError):
        FlushPolicy(size_threshold=5, interval_seconds=-1)


def test_size_threshold_flushes_immediately() -> None:
    clock = _Clock()
    acc = Accumulator(FlushPolicy(size_threshold=5, interval_seconds=60), clock=clock)

    acc.offer_all(_events(4))
    assert acc.should_flush() is False
    acc.offer(Event(id="e-4"))
    assert acc.should_flush() is True

    snapshot = acc.drain_if_due()
    assert snapshot is not None
    assert [e.id for e in snapshot] == [f"e-{i}" for i in range(5)]
    assert acc.item_count == 0


def test_interval_flushes_single_event_after_deadline() -> None:
    clock = _Clock()
    acc = Accumulator(FlushPolicy(size_threshold=5, interval_seconds=60), clock=clock)

    acc.offer(Event(id="only"))
    assert acc.drain_if_due() is None

    clock.now += 61
    snapshot = acc.drain_if_due()
    assert snapshot is not None and [e.id for e in snapshot] == ["only"]
    assert acc.last_flush_at == clock.now


def test_empty_batch_never_flushes() -> None:
    clock = _Clock()
    acc = Accumulator(FlushPolicy(size_threshold=5, interval_seconds=60), clock=clock)

    clock.now += 10_000
    assert acc.should_flush() is False
    assert acc.drain_if_due() is None


def test_flush_resets_the_interval_clock() -> None:
    clock = _Clock()
    acc = Accumulator(FlushPolicy(size_threshold=100, interval_seconds=60), clock=clock)

    acc.offer(Event(id="a"))
    clock.now += 60
    assert acc.drain_if_due() is not None

    acc.offer(Event(id="b"))
    clock.now += 30
    assert acc.drain_if_due() is None


def test_snapshot_and_clear_is_unconditional() -> None:
    acc = Accumulator(FlushPolicy(size_threshold=100, interval_seconds=600), clock=_Clock())

    assert acc.snapshot_and_clear() == []
    acc.offer_all(_events(2))
    assert [e.id for e in acc.snapshot_and_clear()] == ["e-0", "e-1"]
    assert acc.item_count == 0


def test_concurrent_offers_land_in_exactly_one_snapshot() -> None:
    acc = Accumulator(FlushPolicy(size_threshold=7, interval_seconds=3600))
    writers = 8
    per_writer = 500
    snapshots: list[list[Event]] = []
    snapshots_lock = threading.Lock()
    start = threading.Barrier(writers)

    def _writer(idx: int) -> None:
        start.wait()
        for event in _events(per_writer, prefix=f"w{idx}"):
            acc.offer(event)
            drained = acc.drain_if_due()
            if drained:
                with snapshots_lock:
                    snapshots.append(drained)

    threads = [threading.Thread(target=_writer, args=(i,)) for i in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    snapshots.append(acc.snapshot_and_clear())

    seen = [e.id for snap in snapshots for e in snap]
    assert len(seen) == writers * per_writer
    assert len(set(seen)) == writers * per_writer
