"""Casting helpers from canonical events to PostgreSQL column values.

Timestamps are sent as the literal string the collector produced with a
``::timestamp`` cast; the value is never reparsed or shifted between zones.
Mapping-valued columns are serialized to JSON and sent as ``::json``. Columns
not listed in :data:`STORAGE_CASTS` pass through unchanged.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from psycopg2.extensions import ISQLQuote, QuotedString
from psycopg2.extras import Json

from apps.backend.db import to_json
from contracts.events import EVENT_COLUMNS, Event


class PgTimestamp:
    """SQL-quoted ``'<literal>'::timestamp`` adapter for psycopg2."""

    def __init__(self, value: str) -> None:
        self.value = value
        self._conn: Any = None

    def __conform__(self, proto: Any) -> PgTimestamp | None:
        if proto is ISQLQuote:
            return self
        return None

    def prepare(self, conn: Any) -> None:
        self._conn = conn

    def getquoted(self) -> bytes:
        literal = QuotedString(str(self.value))
        if self._conn is not None:
            literal.prepare(self._conn)
        return literal.getquoted() + b"::timestamp"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PgTimestamp) and other.value == self.value

    def __repr__(self) -> str:
        return f"PgTimestamp({self.value!r})"


class PgJson(Json):
    """``psycopg2.extras.Json`` rendering compact JSON with a ``::json`` cast."""

    def dumps(self, obj: Any) -> str:
        return to_json(obj)

    def getquoted(self) -> bytes:
        return super().getquoted() + b"::json"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PgJson) and other.adapted == self.adapted

    def __repr__(self) -> str:
        return f"PgJson({self.adapted!r})"


def pg_timestamp(value: Any) -> PgTimestamp | None:
    if value is None:
        return None
    return PgTimestamp(str(value))


def pg_json(value: Any) -> PgJson | None:
    if value is None:
        return None
    return PgJson(value)


STORAGE_CASTS: Mapping[str, Callable[[Any], Any]] = {
    "ts": pg_timestamp,
    "received_at": pg_timestamp,
    "cookies": pg_json,
    "args": pg_json,
    "form": pg_json,
    "user_data": pg_json,
    "orig_data": pg_json,
}


def cast_for_storage(event: Event | Mapping[str, Any]) -> dict[str, Any]:
    """Return the storage row for one event (column name -> adapted value)."""
    record = event.to_dict() if isinstance(event, Event) else dict(event)
    row: dict[str, Any] = {}
    for column, value in record.items():
        cast = STORAGE_CASTS.get(column)
        row[column] = cast(value) if cast is not None else value
    return row


def row_values(row: Mapping[str, Any], columns: tuple[str, ...] = EVENT_COLUMNS) -> tuple[Any, ...]:
    """Order a storage row by ``columns`` for a positional INSERT."""
    return tuple(row.get(column) for column in columns)
