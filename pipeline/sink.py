"""Persistence of flushed event batches into PostgreSQL.

One flush is one multi-row INSERT. When it fails on the ``id`` unique
constraint (SQLSTATE 23505, usually a Kinesis redelivery) the batch is
retried row by row, each row in its own transaction, and rows whose id is
already stored are skipped. Any other error is logged and raised as
:class:`~contracts.errors.StorageWriteError`; the caller must not fan out
that batch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import psycopg2
from psycopg2 import errors as pg_errors

from apps.backend.db import Database, execute_conn, execute_values_conn, fetch_all_conn
from contracts.errors import StorageWriteError
from contracts.events import EVENT_COLUMNS, Event
from pipeline.storage_cast import row_values

logger = logging.getLogger(__name__)

_CONFLICT_SAMPLE = 3
DEFAULT_MAX_ID_LOOKUP = 10_000


@dataclass(frozen=True)
class WriteResult:
    """Outcome of one successful :meth:`EventSink.write`."""

    inserted: int
    skipped: int = 0
    conflict: bool = False


_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _quote_ident(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return f'"{name}"'


def _is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, pg_errors.UniqueViolation) or getattr(exc, "pgcode", None) == "23505"


def _rollback_quietly(conn: Any) -> None:
    try:
        conn.rollback()
    except psycopg2.Error:
        logger.debug("rollback failed", exc_info=True)


class EventSink:
    """Writes storage rows into the events table."""

    def __init__(
        self,
        db: Database,
        *,
        table: str = "events",
        columns: tuple[str, ...] = EVENT_COLUMNS,
        max_id_lookup: int = DEFAULT_MAX_ID_LOOKUP,
    ) -> None:
        _quote_ident(table)
        self.db = db
        self.table = table
        self.columns = columns
        self.max_id_lookup = int(max_id_lookup)

    def _insert_sql(self, *, multi_row: bool) -> str:
        columns = ", ".join(_quote_ident(c) for c in self.columns)
        values = "%s" if multi_row else "(" + ", ".join(["%s"] * len(self.columns)) + ")"
        return f"INSERT INTO {_quote_ident(self.table)} ({columns}) VALUES {values}"

    def write(self, rows: Sequence[Mapping[str, Any]]) -> WriteResult:
        """Persist ``rows``; see the module docstring for the failure contract."""
        if not rows:
            return WriteResult(inserted=0)
        values = [row_values(row, self.columns) for row in rows]
        try:
            with self.db.connection() as conn:
                return self._write_batch(conn, rows, values)
        except psycopg2.Error as exc:
            # Checkout failures: server unreachable, pool exhausted.
            raise self._hard_failure(exc, len(values)) from exc

    def _write_batch(
        self, conn: Any, rows: Sequence[Mapping[str, Any]], values: Sequence[tuple[Any, ...]]
    ) -> WriteResult:
        try:
            execute_values_conn(conn, self._insert_sql(multi_row=True), values)
            conn.commit()
            return WriteResult(inserted=len(values))
        except psycopg2.Error as exc:
            _rollback_quietly(conn)
            if not _is_conflict(exc):
                raise self._hard_failure(exc, len(values)) from exc
            sample = [str(row.get("id")) for row in rows[:_CONFLICT_SAMPLE]]
            logger.warning(
                "Bulk insert conflict table=%s rows=%d sample_ids=%s detail=%s; retrying row by row",
                self.table,
                len(values),
                sample,
                str(exc).strip().splitlines()[0] if str(exc).strip() else exc.__class__.__name__,
            )
        return self._write_row_by_row(conn, values)

    def _write_row_by_row(self, conn: Any, values: Sequence[tuple[Any, ...]]) -> WriteResult:
        statement = self._insert_sql(multi_row=False)
        inserted = 0
        skipped_ids: list[str] = []
        id_index = self.columns.index("id")
        for row in values:
            try:
                execute_conn(conn, statement, row)
                conn.commit()
                inserted += 1
            except psycopg2.Error as exc:
                _rollback_quietly(conn)
                if not _is_conflict(exc):
                    raise self._hard_failure(exc, len(values) - inserted - len(skipped_ids)) from exc
                skipped_ids.append(str(row[id_index]))
        if skipped_ids:
            logger.warning(
                "Skipped already-stored events table=%s skipped=%d inserted=%d sample_ids=%s",
                self.table,
                len(skipped_ids),
                inserted,
                skipped_ids[:_CONFLICT_SAMPLE],
            )
        return WriteResult(inserted=inserted, skipped=len(skipped_ids), conflict=True)

    def _hard_failure(self, exc: psycopg2.Error, row_count: int) -> StorageWriteError:
        pgcode = getattr(exc, "pgcode", None)
        logger.error(
            "Event insert failed table=%s rows=%d pgcode=%s error=%s: %s",
            self.table,
            row_count,
            pgcode,
            exc.__class__.__name__,
            str(exc).strip(),
        )
        return StorageWriteError(
            f"insert into {self.table} failed: {exc.__class__.__name__}",
            pgcode=pgcode,
            row_count=row_count,
        )

    def find_existing_ids(self, ids: Iterable[str]) -> set[str]:
        """Return which of ``ids`` are already stored.

        Lookups are chunked to ``max_id_lookup`` ids per query.
        """
        unique = sorted({str(i) for i in ids if i is not None})
        if not unique:
            return set()
        query = f"SELECT id FROM {_quote_ident(self.table)} WHERE id = ANY(%s) LIMIT %s"
        found: set[str] = set()
        with self.db.connection() as conn:
            for start in range(0, len(unique), self.max_id_lookup):
                chunk = unique[start : start + self.max_id_lookup]
                for (row_id,) in fetch_all_conn(conn, query, (chunk, len(chunk))):
                    found.add(str(row_id))
        return found

    def filter_new(self, events: Sequence[Event]) -> list[Event]:
        """Drop events whose id is already stored (read-side dedup helper)."""
        existing = self.find_existing_ids(e.id for e in events)
        fresh = [e for e in events if e.id not in existing]
        if existing:
            logger.info("Filtered already-stored events dropped=%d kept=%d", len(events) - len(fresh), len(fresh))
        return fresh


def create_schema(db: Database, ddl: str) -> None:
    """Apply the events table DDL (idempotent ``CREATE ... IF NOT EXISTS``)."""
    with db.connection() as conn:
        execute_conn(conn, ddl)
        conn.commit()
