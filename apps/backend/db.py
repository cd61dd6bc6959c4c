"""
db.py

PostgreSQL (psycopg2) access for the event sink.

A :class:`Database` owns one ``ThreadedConnectionPool``: shard threads flush
concurrently and each checks out its own connection. The DSN and pool sizing
are passed in explicitly by the caller; nothing here reads the environment.

The ``*_conn`` primitives run on a connection the caller already holds so a
flush can run its bulk insert and per-row fallback on one checkout. Every
statement goes through :func:`measure_query`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from threading import Lock
from typing import Any, Optional, Tuple

from psycopg2.extras import execute_values
from psycopg2.pool import ThreadedConnectionPool

from apps.backend.db_metrics import measure_query
from infra.config import DatabaseConfig

logger = logging.getLogger(__name__)


class Database:
    """Lazily-created psycopg2 pool bound to one DSN."""

    def __init__(self, dsn: str, *, maxconn: int = 10, connect_timeout: int = 5) -> None:
        if not dsn:
            raise RuntimeError("DB_URL is not set")
        self.dsn = dsn
        self.maxconn = int(maxconn)
        self.connect_timeout = int(connect_timeout)
        self._pool: ThreadedConnectionPool | None = None
        self._pool_lock = Lock()

    @classmethod
    def from_config(cls, cfg: DatabaseConfig) -> Database:
        return cls(str(cfg.url or ""), maxconn=cfg.pool_maxconn, connect_timeout=cfg.connect_timeout)

    def _get_pool(self) -> ThreadedConnectionPool:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.maxconn,
                    dsn=self.dsn,
                    connect_timeout=self.connect_timeout,
                )
            return self._pool

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Yield a pooled connection.

        Callers must not close it. Any open transaction is rolled back before
        the connection goes back to the pool; if the pool refuses it, it is
        closed instead.
        """
        pool = self._get_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            try:
                conn.rollback()
            except Exception:  # pylint: disable=broad-except
                logger.debug("rollback before putconn failed", exc_info=True)
            try:
                pool.putconn(conn)
            except Exception:  # pylint: disable=broad-except
                try:
                    conn.close()
                except Exception:  # pylint: disable=broad-except
                    logger.debug("close after failed putconn failed", exc_info=True)

    def close(self) -> None:
        """Close every pooled connection."""
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.closeall()


def _query_name(sql: str, *, operation: str) -> str:
    """Return a stable query operation label for metrics/logging."""
    text = " ".join(str(sql or "").strip().split())
    if not text:
        return operation
    first_token = text.split(" ", 1)[0].lower()
    return f"{operation}:{first_token}"


def fetch_all_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> list[Tuple[Any, ...]]:
    """Execute a query on an existing connection and return all rows."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_conn")):
            cur.execute(sql, params or ())
        return cur.fetchall()


def execute_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> None:
    """Execute a statement on an existing connection (no returned rows)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_conn")):
            cur.execute(sql, params or ())


def execute_values_conn(conn: Any, sql: str, rows: Sequence[Sequence[Any]], *, page_size: int = 1000) -> None:
    """Run one multi-row ``INSERT ... VALUES %s`` on an existing connection."""
    if not rows:
        return
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_values_conn")):
            execute_values(cur, sql, list(rows), page_size=max(len(rows), int(page_size)))


def to_json(value: Any) -> str:
    """Serialize a Python object to a compact JSON string."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
