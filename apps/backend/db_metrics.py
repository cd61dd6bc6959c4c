"""
db_metrics.py

Statement timing for the event sink's PostgreSQL calls.

Every ``*_conn`` primitive in :mod:`apps.backend.db` runs its statement inside
:func:`measure_query` with a label such as ``execute_values_conn:insert``.
Elapsed time goes to the registered query observer (``run`` wires
:meth:`pipeline.metrics.PipelineMetrics.observe_query`, so the status
endpoint reports per-label latency next to flush latency). Statements at or
above ``DB_SLOW_QUERY_THRESHOLD_MS`` are logged as warnings.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from threading import Lock

from infra.config import get_settings

_LOGGER = logging.getLogger(__name__)

QueryObserver = Callable[[str, float], None]

_OBSERVER_LOCK = Lock()
_OBSERVER: QueryObserver | None = None


def set_query_observer(observer: QueryObserver | None) -> QueryObserver | None:
    """Install ``observer`` (``None`` removes it) and return the previous one.

    The observer is called with the statement label and the elapsed
    milliseconds, from whichever shard thread ran the statement.
    """
    global _OBSERVER
    with _OBSERVER_LOCK:
        previous, _OBSERVER = _OBSERVER, observer
    return previous


def _notify(label: str, elapsed_ms: float) -> None:
    observer = _OBSERVER
    if observer is None:
        return
    try:
        observer(label, elapsed_ms)
    except (TypeError, ValueError, RuntimeError) as exc:
        _LOGGER.debug("query observer failed label=%s: %s", label, exc)


@contextmanager
def measure_query(label: str) -> Iterator[None]:
    """Time the enclosed statement under ``label``.

    A statement that raises is still timed and reported; the error propagates.
    """
    cfg = get_settings().db_metrics
    if not cfg.metrics_enabled:
        yield
        return

    failed = False
    start = time.perf_counter()
    try:
        yield
    except BaseException:
        failed = True
        raise
    finally:
        elapsed_ms = round((time.perf_counter() - start) * 1000.0, 2)
        if elapsed_ms >= cfg.slow_query_threshold_ms:
            _LOGGER.warning(
                "Slow statement label=%s elapsed_ms=%.2f threshold_ms=%.2f failed=%s",
                label,
                elapsed_ms,
                cfg.slow_query_threshold_ms,
                failed,
            )
        _notify(label, elapsed_ms)
