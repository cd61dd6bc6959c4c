"""Storage boundary: canonical events -> psycopg2 column values."""

from __future__ import annotations

import json

from contracts.events import EVENT_COLUMNS, Event
from pipeline.storage_cast import PgJson, PgTimestamp, cast_for_storage, row_values


def _event() -> Event:
    return Event(
        id="seq-1",
        received_at="2023-11-14 22:13:20.500",
        ts="14/Nov/2023:22:13:20 +0000",
        url="https://site.example/a",
        ip="10.0.0.1",
        evt_type="pv",
        args={"_e": "pv"},
        cookies={"sid": "abc"},
        orig_data={"m": "get"},
    )


def test_timestamps_pass_the_literal_through() -> None:
    row = cast_for_storage(_event())

    assert row["received_at"] == PgTimestamp("2023-11-14 22:13:20.500")
    assert row["ts"] == PgTimestamp("14/Nov/2023:22:13:20 +0000")
    assert row["ts"].getquoted() == b"'14/Nov/2023:22:13:20 +0000'::timestamp"


def test_mapping_columns_become_json() -> None:
    row = cast_for_storage(_event())

    for column in ("cookies", "args", "orig_data"):
        assert isinstance(row[column], PgJson)
    assert json.loads(row["args"].dumps(row["args"].adapted)) == {"_e": "pv"}
    assert row["cookies"].getquoted() == b"""'{"sid":"abc"}'::json"""


def test_absent_values_stay_null() -> None:
    row = cast_for_storage(Event(id="seq-2"))

    assert row["ts"] is None
    assert row["received_at"] is None
    assert row["form"] is None
    assert row["user_data"] is None
    # cookies default to an empty map, which is still stored as JSON
    assert row["cookies"] == PgJson({})


def test_unmapped_columns_pass_through_unchanged() -> None:
    row = cast_for_storage(_event())

    assert row["id"] == "seq-1"
    assert row["url"] == "https://site.example/a"
    assert row["ip"] == "10.0.0.1"
    assert row["evt_type"] == "pv"
    assert set(row) == set(EVENT_COLUMNS)


def test_cast_accepts_plain_mappings_with_extra_columns() -> None:
    row = cast_for_storage({"id": "x", "ts": "2024-01-01", "extra": {"k": 1}})

    assert row == {"id": "x", "ts": PgTimestamp("2024-01-01"), "extra": {"k": 1}}


def test_row_values_follow_column_order() -> None:
    row = cast_for_storage(_event())
    values = row_values(row)

    assert len(values) == len(EVENT_COLUMNS)
    assert values[0] == "seq-1"
    assert values[EVENT_COLUMNS.index("evt_type")] == "pv"
