"""
eventsink CLI (flat-layout friendly).

Usage
-----
eventsink run --stream tracking-events --db-url "postgresql://..." --batch-size 5000 --interval 60
eventsink init-db --db-url "postgresql://..."

Flags override settings read from ``.env`` / the environment (see
``infra.config``).
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional

from apps.backend.db import Database
from apps.backend.db_metrics import set_query_observer
from apps.status_api.app import StatusServer, create_app
from apps.worker.stream_consumer import ConsumerOptions, ConsumerStats, KinesisStreamConsumer
from infra.aws_config import kinesis_client
from infra.config import Settings, get_settings
from infra.logging_config import setup_logging
from pipeline.accumulator import Accumulator, FlushPolicy
from pipeline.coordinator import PipelineCoordinator
from pipeline.metrics import PipelineMetrics
from pipeline.publisher import RedisPublisher
from pipeline.sink import EventSink, create_schema
from version import ENGINE_NAME, ENGINE_VERSION

logger = logging.getLogger(__name__)

_DEFAULT_DDL = Path(__file__).resolve().parent / "sql" / "events.sql"


def _port(value: str) -> int:
    port = int(value)
    if not 0 < port < 0x10000:
        raise argparse.ArgumentTypeError("Must be a number between 0 and 65536")
    return port


def _reject_checkpoint(_value: str) -> str:
    raise argparse.ArgumentTypeError("Checkpoint not implemented yet!")


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Return ``settings`` with any CLI flags layered on top."""
    overrides: dict[str, dict[str, Any]] = {
        "db": {"url": getattr(args, "db_url", None)},
        "pipeline": {
            "batch_size": getattr(args, "batch_size", None),
            "flush_interval_seconds": getattr(args, "interval", None),
        },
        "stream": {
            "app_name": getattr(args, "app_name", None),
            "stream_name": getattr(args, "stream", None),
            "region": getattr(args, "aws_region", None),
            "access_key_id": getattr(args, "aws_key", None),
            "secret_access_key": getattr(args, "aws_secret", None),
        },
        "pubsub": {
            "redis_url": getattr(args, "redis_url", None),
            "channel": getattr(args, "channel", None),
        },
        "api": {"port": getattr(args, "port", None)},
    }
    payload = settings.model_dump()
    for section, values in overrides.items():
        for key, value in values.items():
            if value is not None:
                payload[section][key] = value
    return Settings.model_validate(payload)


def build_coordinator(settings: Settings, db: Database, metrics: PipelineMetrics) -> PipelineCoordinator:
    policy = FlushPolicy(
        size_threshold=settings.pipeline.batch_size,
        interval_seconds=settings.pipeline.flush_interval_seconds,
    )
    sink = EventSink(db, table=settings.db.table, max_id_lookup=settings.pipeline.max_id_lookup)
    return PipelineCoordinator(
        Accumulator(policy),
        sink,
        RedisPublisher.from_config(settings.pubsub),
        metrics=metrics,
    )


def cmd_run(args: argparse.Namespace) -> None:
    settings = apply_overrides(get_settings(reload=True), args)
    if not settings.stream.stream_name:
        raise SystemExit("Missing --stream (or KINESIS_STREAM env var).")
    if not settings.db.url:
        raise SystemExit("Missing --db-url (or DB_URL env var).")

    logger.info(
        "Options app=%s stream=%s batch_size=%d interval=%ss channel=%s",
        settings.stream.app_name,
        settings.stream.stream_name,
        settings.pipeline.batch_size,
        settings.pipeline.flush_interval_seconds,
        settings.pubsub.channel,
    )

    metrics = PipelineMetrics()
    set_query_observer(metrics.observe_query)
    db = Database.from_config(settings.db)
    coordinator = build_coordinator(settings, db, metrics)
    consumer = KinesisStreamConsumer(
        kinesis_client(settings.stream),
        coordinator,
        ConsumerOptions(
            stream_name=str(settings.stream.stream_name),
            app_name=settings.stream.app_name,
            start_position=settings.stream.start_position,
            poll_interval_seconds=settings.stream.poll_interval_seconds,
            records_limit=settings.stream.records_limit,
        ),
    )
    status = StatusServer(create_app(metrics), host=settings.api.host, port=settings.api.port)

    stopped = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.warning("Received signal %d, shutting down", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    status.start()
    consumer.start()
    logger.info("%s %s started", ENGINE_NAME, ENGINE_VERSION)
    try:
        stopped.wait()
    finally:
        try:
            consumer.stop()
        finally:
            status.stop()
            db.close()
            set_query_observer(None)
            logger.info("Shard summary %s", ConsumerStats.from_consumer(consumer).shards)


def cmd_init_db(args: argparse.Namespace) -> None:
    settings = apply_overrides(get_settings(reload=True), args)
    if not settings.db.url:
        raise SystemExit("Missing --db-url (or DB_URL env var).")
    ddl_path = Path(args.ddl)
    if not ddl_path.is_file():
        raise SystemExit(f"DDL file not found: {ddl_path}")
    db = Database.from_config(settings.db)
    try:
        create_schema(db, ddl_path.read_text(encoding="utf-8"))
    finally:
        db.close()
    print(f"Applied {ddl_path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=ENGINE_NAME, description="Kinesis tracking-event sink.")
    parser.add_argument("--version", action="version", version=f"{ENGINE_NAME} {ENGINE_VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Consume the stream, persist to Postgres and fan out to Redis.")
    run.add_argument("-p", "--port", type=_port, default=None, help="Status endpoint port (default 8989).")
    run.add_argument("-a", "--app-name", default=None, help="Application name used for the Kinesis stream.")
    run.add_argument("-c", "--checkpoint", type=_reject_checkpoint, default=None, help="Not implemented.")
    run.add_argument("--aws-key", default=None, help="AWS access key id.")
    run.add_argument("--aws-secret", default=None, help="AWS secret access key.")
    run.add_argument("--aws-region", "--aws-endpoint", dest="aws_region", default=None, help="AWS region.")
    run.add_argument("--stream", "--aws-kinesis-stream", dest="stream", default=None, help="Kinesis stream name.")
    run.add_argument("-b", "--batch-size", type=int, default=None, help="Flush when this many events are pending.")
    run.add_argument("-i", "--interval", type=float, default=None, help="Seconds between flushes.")
    run.add_argument("--redis-url", default=None, help="Redis URL for the fan-out channel.")
    run.add_argument("--channel", default=None, help="Redis pub/sub channel name.")
    run.add_argument("--db-url", default=None, help="Postgres connection URL.")
    run.set_defaults(func=cmd_run)

    init_db = sub.add_parser("init-db", help="Create the events table if missing.")
    init_db.add_argument("--db-url", default=None, help="Postgres connection URL.")
    init_db.add_argument("--ddl", default=str(_DEFAULT_DDL), help="Path to the DDL file.")
    init_db.set_defaults(func=cmd_init_db)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])
    args.func(args)


if __name__ == "__main__":
    main()
