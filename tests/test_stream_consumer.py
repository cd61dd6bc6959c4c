"""Kinesis shard polling and in-memory checkpoints."""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import psycopg2
import pytest
from botocore.exceptions import ClientError

from apps.worker.stream_consumer import ConsumerOptions, ConsumerStats, KinesisStreamConsumer, ShardState, to_raw_records
from contracts.errors import StorageWriteError
from contracts.events import CheckpointDecision, RawRecord
from pipeline.accumulator import Accumulator, FlushPolicy
from pipeline.coordinator import PipelineCoordinator
from pipeline.sink import EventSink


class _FakeKinesis:
    """Serves scripted ``get_records`` pages and records iterator requests."""

    def __init__(self, pages: list[Any] | None = None, shard_pages: list[dict[str, Any]] | None = None) -> None:
        self.pages = list(pages or [])
        self.shard_pages = list(shard_pages or [{"Shards": [{"ShardId": "shardId-000"}]}])
        self.iterator_requests: list[dict[str, Any]] = []
        self.list_requests: list[dict[str, Any]] = []

    def list_shards(self, **kwargs: Any) -> dict[str, Any]:
        self.list_requests.append(kwargs)
        return self.shard_pages.pop(0)

    def get_shard_iterator(self, **kwargs: Any) -> dict[str, Any]:
        self.iterator_requests.append(kwargs)
        return {"ShardIterator": f"it-{len(self.iterator_requests)}"}

    def get_records(self, **kwargs: Any) -> dict[str, Any]:
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


class _FakeCoordinator:
    def __init__(self, decisions: list[Any] | None = None) -> None:
        self.decisions = list(decisions or [])
        self.batches: list[list[RawRecord]] = []
        self.flushed = 0

    def on_record_batch(self, records: Sequence[RawRecord]) -> CheckpointDecision:
        self.batches.append(list(records))
        decision = self.decisions.pop(0) if self.decisions else CheckpointDecision.CONTINUE
        if isinstance(decision, Exception):
            raise decision
        return decision

    def flush(self) -> None:
        self.flushed += 1


def _page(*seqs: str, next_iterator: str | None = "next") -> dict[str, Any]:
    return {
        "Records": [{"SequenceNumber": s, "PartitionKey": "pk", "Data": b"{}"} for s in seqs],
        "NextShardIterator": next_iterator,
    }


def _consumer(client: _FakeKinesis, coordinator: _FakeCoordinator, **options: Any) -> KinesisStreamConsumer:
    return KinesisStreamConsumer(
        client,
        coordinator,  # type: ignore[arg-type]
        ConsumerOptions(stream_name="tracking", **options),
        sleep=lambda _seconds: None,
    )


def test_missing_stream_name_is_rejected() -> None:
    with pytest.raises(RuntimeError, match="KINESIS_STREAM_NAME_MISSING"):
        KinesisStreamConsumer(_FakeKinesis(), _FakeCoordinator(), ConsumerOptions(stream_name=""))  # type: ignore[arg-type]


def test_to_raw_records_maps_the_response() -> None:
    records = to_raw_records({"Records": [{"SequenceNumber": "1", "PartitionKey": "pk", "Data": "x"}]})
    assert records == [RawRecord(sequence_number="1", partition_key="pk", payload=b"x")]


def test_list_shards_follows_pagination() -> None:
    client = _FakeKinesis(
        shard_pages=[
            {"Shards": [{"ShardId": "a"}], "NextToken": "tok"},
            {"Shards": [{"ShardId": "b"}]},
        ]
    )
    consumer = _consumer(client, _FakeCoordinator())

    assert consumer.list_shards() == ["a", "b"]
    assert client.list_requests == [{"StreamName": "tracking"}, {"NextToken": "tok"}]


def test_checkpoint_moves_only_on_checkpoint_decision() -> None:
    client = _FakeKinesis(pages=[_page("1", "2"), _page("3")])
    coordinator = _FakeCoordinator([CheckpointDecision.CONTINUE, CheckpointDecision.CHECKPOINT])
    consumer = _consumer(client, coordinator)
    state = ShardState(shard_id="shardId-000")

    assert consumer.poll_once(state) == 2
    assert state.checkpoint is None
    assert consumer.poll_once(state) == 1
    assert state.checkpoint == "3"
    assert client.iterator_requests[0]["ShardIteratorType"] == "TRIM_HORIZON"


def test_empty_polls_still_reach_the_coordinator() -> None:
    client = _FakeKinesis(pages=[_page()])
    coordinator = _FakeCoordinator()
    consumer = _consumer(client, coordinator)

    assert consumer.poll_once(ShardState(shard_id="shardId-000")) == 0
    assert coordinator.batches == [[]]


def test_closed_shard_stops_polling() -> None:
    client = _FakeKinesis(pages=[_page("1", next_iterator=None)])
    consumer = _consumer(client, _FakeCoordinator())
    state = ShardState(shard_id="shardId-000")

    consumer.poll_once(state)

    assert state.closed is True


def test_iterator_resumes_after_checkpoint_on_read_error() -> None:
    expired = ClientError(
        {"Error": {"Code": "ExpiredIteratorException", "Message": "Iterator expired"}}, "GetRecords"
    )
    client = _FakeKinesis(pages=[expired, _page("9", next_iterator=None)])
    consumer = _consumer(client, _FakeCoordinator(), start_position="latest")
    state = ShardState(shard_id="shardId-000", checkpoint="5")

    consumer._run_shard(state)  # pylint: disable=protected-access

    assert state.failures == 1
    assert state.closed is True
    assert len(client.iterator_requests) == 2
    assert client.iterator_requests[1]["ShardIteratorType"] == "AFTER_SEQUENCE_NUMBER"
    assert client.iterator_requests[1]["StartingSequenceNumber"] == "5"


def test_latest_start_position_without_checkpoint() -> None:
    consumer = _consumer(_FakeKinesis(), _FakeCoordinator(), start_position="latest")
    args = consumer._iterator_args(ShardState(shard_id="s"))  # pylint: disable=protected-access
    assert args["ShardIteratorType"] == "LATEST"


def test_storage_failure_keeps_the_shard_running() -> None:
    client = _FakeKinesis(pages=[_page("1"), _page("2", next_iterator=None)])
    coordinator = _FakeCoordinator(
        [StorageWriteError("insert into events failed", row_count=1), CheckpointDecision.CHECKPOINT]
    )
    consumer = _consumer(client, coordinator)
    state = ShardState(shard_id="shardId-000")

    consumer._run_shard(state)  # pylint: disable=protected-access

    assert state.failures == 1
    assert state.checkpoint == "2"
    assert state.deliveries == 2


def test_start_and_stop_flush_pending_events() -> None:
    client = _FakeKinesis(pages=[_page("1", next_iterator=None)])
    coordinator = _FakeCoordinator([CheckpointDecision.CHECKPOINT])
    consumer = _consumer(client, coordinator)

    consumer.start()
    for thread in list(consumer._threads):  # pylint: disable=protected-access
        thread.join(timeout=5.0)
    consumer.stop(timeout=1.0)

    assert coordinator.flushed == 1
    stats = ConsumerStats.from_consumer(consumer)
    assert stats.shards == {"shardId-000": {"checkpoint": "1", "deliveries": 1, "failures": 0}}


def test_start_without_shards_raises() -> None:
    consumer = _consumer(_FakeKinesis(shard_pages=[{"Shards": []}]), _FakeCoordinator())
    with pytest.raises(RuntimeError):
        consumer.start()


class _UnreachableDatabase:
    @contextmanager
    def connection(self) -> Iterator[Any]:
        raise psycopg2.OperationalError("could not connect to server: Connection refused")
        yield  # pragma: no cover


class _NullPublisher:
    def __init__(self) -> None:
        self.calls = 0

    def publish_all(self, events: Any) -> tuple[int, int]:
        self.calls += 1
        return 0, 0


def test_unreachable_database_does_not_kill_the_shard_reader() -> None:
    envelope = json.dumps({"m": "get", "epoch": 1700000000, "uri": "/pixel.gif"}).encode()
    pages = [
        {"Records": [{"SequenceNumber": "1", "PartitionKey": "pk", "Data": envelope}], "NextShardIterator": "n"},
        {"Records": [{"SequenceNumber": "2", "PartitionKey": "pk", "Data": envelope}], "NextShardIterator": None},
    ]
    publisher = _NullPublisher()
    coordinator = PipelineCoordinator(
        Accumulator(FlushPolicy(size_threshold=1, interval_seconds=3600)),
        EventSink(_UnreachableDatabase()),  # type: ignore[arg-type]
        publisher,
    )
    consumer = _consumer(_FakeKinesis(pages=pages), coordinator)  # type: ignore[arg-type]
    state = ShardState(shard_id="shardId-000")

    consumer._run_shard(state)  # pylint: disable=protected-access

    assert state.deliveries == 2
    assert state.failures == 2
    assert state.checkpoint is None
    assert state.closed is True
    assert publisher.calls == 0


def test_final_flush_failure_is_logged_not_raised(caplog: Any) -> None:
    class _FailingFlush(_FakeCoordinator):
        def flush(self) -> None:
            raise StorageWriteError("insert into events failed: OperationalError", row_count=4)

    consumer = _consumer(_FakeKinesis(), _FailingFlush())
    caplog.set_level("ERROR")

    consumer.stop(timeout=0.1)

    assert any("Final flush failed" in r.message and "rows=4" in r.message for r in caplog.records)
