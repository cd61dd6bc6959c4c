"""
apps.worker.stream_consumer

Kinesis consumer that feeds :class:`pipeline.coordinator.PipelineCoordinator`.

One thread per shard polls ``get_records`` and hands every poll, including
empty ones, to the coordinator so time-based flushes fire on quiet streams.
Checkpoints are in-memory only: a shard's checkpoint moves to the last
delivered sequence number when the coordinator answers ``CHECKPOINT``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from contracts.errors import StorageWriteError
from contracts.events import RawRecord
from infra.logging_config import set_log_context
from pipeline.coordinator import PipelineCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumerOptions:
    """Polling options for one stream."""

    stream_name: str
    app_name: str = "kinesis-sample-consumer0"
    start_position: str = "trim_horizon"
    poll_interval_seconds: float = 1.0
    records_limit: int = 1000


@dataclass
class ShardState:
    """Per-shard cursor: where reads continue and where it is safe to resume."""

    shard_id: str
    iterator: str | None = None
    last_sequence: str | None = None
    checkpoint: str | None = None
    deliveries: int = 0
    failures: int = 0
    closed: bool = False


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return exc.__class__.__name__


def _error_detail(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message") or "")[:256]
    return str(exc)[:256]


def _to_bytes(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return str(data).encode("utf-8")


def to_raw_records(response: dict[str, Any]) -> list[RawRecord]:
    """Map a ``get_records`` response to :class:`RawRecord` values."""
    return [
        RawRecord(
            sequence_number=str(record.get("SequenceNumber") or ""),
            partition_key=str(record.get("PartitionKey") or ""),
            payload=_to_bytes(record.get("Data")),
        )
        for record in response.get("Records", [])
    ]


class KinesisStreamConsumer:
    """Polls every shard of one stream and drives the coordinator."""

    def __init__(
        self,
        client: Any,
        coordinator: PipelineCoordinator,
        options: ConsumerOptions,
        *,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        if not options.stream_name:
            raise RuntimeError("KINESIS_STREAM_NAME_MISSING")
        self._client = client
        self.coordinator = coordinator
        self.options = options
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._threads: list[threading.Thread] = []
        self.shards: dict[str, ShardState] = {}

    def list_shards(self) -> list[str]:
        shard_ids: list[str] = []
        kwargs: dict[str, Any] = {"StreamName": self.options.stream_name}
        while True:
            response = self._client.list_shards(**kwargs)
            shard_ids.extend(s["ShardId"] for s in response.get("Shards", []) if s.get("ShardId"))
            token = response.get("NextToken")
            if not token:
                return shard_ids
            kwargs = {"NextToken": token}

    def _iterator_args(self, state: ShardState) -> dict[str, Any]:
        args: dict[str, Any] = {
            "StreamName": self.options.stream_name,
            "ShardId": state.shard_id,
            "ShardIteratorType": "TRIM_HORIZON",
        }
        if state.checkpoint:
            args["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
            args["StartingSequenceNumber"] = state.checkpoint
        elif self.options.start_position == "latest":
            args["ShardIteratorType"] = "LATEST"
        return args

    def _ensure_iterator(self, state: ShardState) -> None:
        if state.iterator is None:
            response = self._client.get_shard_iterator(**self._iterator_args(state))
            state.iterator = response.get("ShardIterator")

    def poll_once(self, state: ShardState) -> int:
        """Read one page from ``state``'s shard and deliver it. Returns the record count."""
        self._ensure_iterator(state)
        if state.iterator is None:
            state.closed = True
            return 0
        response = self._client.get_records(ShardIterator=state.iterator, Limit=int(self.options.records_limit))
        state.iterator = response.get("NextShardIterator")
        if state.iterator is None:
            state.closed = True

        records = to_raw_records(response)
        if records:
            state.last_sequence = records[-1].sequence_number
        state.deliveries += 1
        decision = self.coordinator.on_record_batch(records)
        if decision.should_checkpoint and state.last_sequence:
            state.checkpoint = state.last_sequence
            logger.debug("Checkpoint shard=%s sequence=%s", state.shard_id, state.checkpoint)
        return len(records)

    def _run_shard(self, state: ShardState) -> None:
        set_log_context(stream=self.options.stream_name, shard_id=state.shard_id)
        logger.info("Shard reader started shard=%s", state.shard_id)
        while not self._stop.is_set() and not state.closed:
            try:
                self.poll_once(state)
            except StorageWriteError as exc:
                state.failures += 1
                logger.error(
                    "Flush failed shard=%s pgcode=%s rows=%d; snapshot dropped",
                    state.shard_id,
                    exc.pgcode,
                    exc.row_count,
                )
            except (ClientError, BotoCoreError) as exc:
                state.failures += 1
                # Expired iterators are re-created from the checkpoint on the next poll.
                state.iterator = None
                logger.warning(
                    "Kinesis read failed shard=%s code=%s detail=%s",
                    state.shard_id,
                    _error_code(exc),
                    _error_detail(exc),
                )
            self._sleep(float(self.options.poll_interval_seconds))
        logger.info("Shard reader stopped shard=%s closed=%s", state.shard_id, state.closed)

    def start(self) -> None:
        shard_ids = self.list_shards()
        if not shard_ids:
            raise RuntimeError(f"stream {self.options.stream_name!r} has no shards")
        logger.warning(
            "Starting Kinesis consumer app=%s stream=%s shards=%d",
            self.options.app_name,
            self.options.stream_name,
            len(shard_ids),
        )
        for shard_id in shard_ids:
            state = self.shards.setdefault(shard_id, ShardState(shard_id=shard_id))
            thread = threading.Thread(target=self._run_shard, args=(state,), name=f"shard-{shard_id}", daemon=True)
            self._threads.append(thread)
            thread.start()

    def stop(self, *, timeout: float = 30.0) -> None:
        """Stop shard threads, then flush whatever is still pending."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        try:
            report = self.coordinator.flush()
        except StorageWriteError as exc:
            logger.error(
                "Final flush failed pgcode=%s rows=%d; pending events dropped",
                exc.pgcode,
                exc.row_count,
            )
            return
        if report is not None:
            logger.info("Final flush events=%d inserted=%d", report.events, report.write.inserted)


@dataclass
class ConsumerStats:
    """Summary used by the CLI on shutdown."""

    shards: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_consumer(cls, consumer: KinesisStreamConsumer) -> ConsumerStats:
        return cls(
            shards={
                sid: {"checkpoint": s.checkpoint, "deliveries": s.deliveries, "failures": s.failures}
                for sid, s in consumer.shards.items()
            }
        )
