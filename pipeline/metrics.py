"""In-process metrics registry read by the status endpoint.

Meters report a count, the mean rate and a one-minute exponentially weighted
rate (5 second ticks, as in Dropwizard). Timers and histograms keep a bounded
reservoir of recent observations for percentiles. Everything is guarded by a
per-instrument lock; readers never touch the accumulator itself.
"""

from __future__ import annotations

import math
import statistics
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from contextlib import contextmanager
from typing import Any, Iterator

_TICK_SECONDS = 5.0
_ONE_MINUTE_ALPHA = 1.0 - math.exp(-_TICK_SECONDS / 60.0)
_RESERVOIR_SIZE = 1028
_PERCENTILES = (0.5, 0.75, 0.95, 0.99)


class Meter:
    """Event counter with mean and one-minute rates (events/second)."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._uncounted = 0
        self._rate: float | None = None
        self._start = clock()
        self._last_tick = self._start

    def _tick_if_needed(self) -> None:
        now = self._clock()
        while now - self._last_tick >= _TICK_SECONDS:
            instant = self._uncounted / _TICK_SECONDS
            self._uncounted = 0
            if self._rate is None:
                self._rate = instant
            else:
                self._rate += _ONE_MINUTE_ALPHA * (instant - self._rate)
            self._last_tick += _TICK_SECONDS

    def mark(self, n: int = 1) -> None:
        with self._lock:
            self._tick_if_needed()
            self._count += int(n)
            self._uncounted += int(n)

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def rates(self) -> dict[str, float]:
        with self._lock:
            self._tick_if_needed()
            elapsed = self._clock() - self._start
            mean = self._count / elapsed if elapsed > 0 else 0.0
            return {
                "count": self._count,
                "mean": round(mean, 4),
                "1-min": round(self._rate or 0.0, 4),
            }


class Histogram:
    """Bounded reservoir of the most recent observations."""

    def __init__(self, *, size: int = _RESERVOIR_SIZE) -> None:
        self._lock = threading.Lock()
        self._values: deque[float] = deque(maxlen=size)
        self._count = 0

    def update(self, value: float) -> None:
        with self._lock:
            self._values.append(float(value))
            self._count += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            values = sorted(self._values)
            count = self._count
        if not values:
            return {"count": count, "min": None, "max": None, "mean": None, "std-dev": None, "percentiles": {}}
        return {
            "count": count,
            "min": values[0],
            "max": values[-1],
            "mean": round(statistics.fmean(values), 4),
            "std-dev": round(statistics.pstdev(values), 4),
            "percentiles": {str(p): _nearest_rank(values, p) for p in _PERCENTILES},
        }


def _nearest_rank(sorted_values: Sequence[float], quantile: float) -> float:
    rank = max(1, math.ceil(quantile * len(sorted_values)))
    return sorted_values[rank - 1]


class Timer(Histogram):
    """Histogram of durations in milliseconds."""

    @contextmanager
    def time(self) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.update((time.perf_counter() - start) * 1000.0)


class PipelineMetrics:
    """Counters and gauges for the ingestion pipeline."""

    def __init__(self) -> None:
        self.events_ingested = Meter()
        self.normalization_failures = Meter()
        self.flushes = Meter()
        self.conflicts = Meter()
        self.publish_failures = Meter()
        self.flush_latency = Timer()
        self.query_latency = Timer()
        self._query_lock = threading.Lock()
        self._queries: dict[str, Timer] = {}
        self.batch_size = Histogram()
        self._batch_size_gauge: Callable[[], int] = lambda: 0

    def bind_batch_size_gauge(self, gauge: Callable[[], int]) -> None:
        self._batch_size_gauge = gauge

    @property
    def current_batch_size(self) -> int:
        return int(self._batch_size_gauge())

    def observe_query(self, label: str, value_ms: float) -> None:
        """Query observer for :func:`apps.backend.db_metrics.set_query_observer`.

        Feeds the overall query timer and one timer per statement label.
        """
        self.query_latency.update(value_ms)
        with self._query_lock:
            timer = self._queries.get(label)
            if timer is None:
                timer = self._queries[label] = Timer()
        timer.update(value_ms)

    def query_snapshot(self) -> dict[str, Any]:
        with self._query_lock:
            timers = dict(self._queries)
        return {label: timers[label].snapshot() for label in sorted(timers)}

    def snapshot(self) -> dict[str, Any]:
        return {
            "events": self.events_ingested.rates(),
            "normalization_failures": self.normalization_failures.rates(),
            "flushes": self.flushes.rates(),
            "conflicts": self.conflicts.rates(),
            "publish_failures": self.publish_failures.rates(),
            "flush_timing_ms": self.flush_latency.snapshot(),
            "query_timing_ms": self.query_latency.snapshot(),
            "queries": self.query_snapshot(),
            "buffer": {
                "current": self.current_batch_size,
                **self.batch_size.snapshot(),
            },
        }
