"""Drives one record delivery through normalize -> accumulate -> flush -> publish.

Persist-then-publish: a flushed snapshot is published only after the sink
returned. On a storage hard failure the error propagates, nothing from the
snapshot is published, and the snapshot is not re-queued.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from contracts.errors import NormalizationError
from contracts.events import CheckpointDecision, Event, RawRecord
from pipeline.accumulator import Accumulator
from pipeline.metrics import PipelineMetrics
from pipeline.normalize import normalize
from pipeline.sink import WriteResult
from pipeline.storage_cast import cast_for_storage

logger = logging.getLogger(__name__)


class Sink(Protocol):
    def write(self, rows: Sequence[dict]) -> WriteResult: ...


class Publisher(Protocol):
    def publish_all(self, events: Iterable[Event]) -> tuple[int, int]: ...


@dataclass(frozen=True)
class FlushReport:
    """What happened to one flushed snapshot."""

    events: int
    write: WriteResult
    published: int
    publish_failures: int


class PipelineCoordinator:
    """Entry point called by the stream consumer for every record delivery."""

    def __init__(
        self,
        accumulator: Accumulator,
        sink: Sink,
        publisher: Publisher,
        *,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self.accumulator = accumulator
        self.sink = sink
        self.publisher = publisher
        self.metrics = metrics or PipelineMetrics()
        self.metrics.bind_batch_size_gauge(lambda: self.accumulator.item_count)

    def _normalize_all(self, records: Iterable[RawRecord]) -> list[Event]:
        events: list[Event] = []
        for record in records:
            try:
                events.append(normalize(record.sequence_number, record.payload))
            except NormalizationError as exc:
                self.metrics.normalization_failures.mark()
                logger.warning(
                    "Dropping record sequence_number=%s partition_key=%s: %s",
                    record.sequence_number,
                    record.partition_key,
                    exc,
                )
        return events

    def on_record_batch(self, records: Sequence[RawRecord]) -> CheckpointDecision:
        """Ingest one delivery; flush when the policy fires.

        Raises :class:`~contracts.errors.StorageWriteError` when the flush hit
        a storage hard failure.
        """
        events = self._normalize_all(records)
        if events:
            size = self.accumulator.offer_all(events)
            self.metrics.events_ingested.mark(len(events))
        else:
            size = self.accumulator.item_count
        self.metrics.batch_size.update(size)
        logger.debug("Accepted records=%d events=%d batch_size=%d", len(records), len(events), size)

        snapshot = self.accumulator.drain_if_due()
        if snapshot is None:
            return CheckpointDecision.CONTINUE
        self.flush_snapshot(snapshot)
        return CheckpointDecision.CHECKPOINT

    def flush(self) -> FlushReport | None:
        """Drain and flush whatever is pending, regardless of thresholds."""
        snapshot = self.accumulator.snapshot_and_clear()
        if not snapshot:
            return None
        return self.flush_snapshot(snapshot)

    def flush_snapshot(self, snapshot: Sequence[Event]) -> FlushReport:
        rows = [cast_for_storage(event) for event in snapshot]
        with self.metrics.flush_latency.time():
            result = self.sink.write(rows)
        self.metrics.flushes.mark()
        if result.conflict:
            self.metrics.conflicts.mark()

        published, failed = self.publisher.publish_all(snapshot)
        if failed:
            self.metrics.publish_failures.mark(failed)
        logger.info(
            "Flushed events=%d inserted=%d skipped=%d published=%d publish_failures=%d",
            len(snapshot),
            result.inserted,
            result.skipped,
            published,
            failed,
        )
        return FlushReport(events=len(snapshot), write=result, published=published, publish_failures=failed)
