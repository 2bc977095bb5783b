"""
Tests for result export.
"""
import json
from datetime import datetime

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from checkmyhouse.util.export_utils import ensure_arrow_table, export_rows, flatten_rows

ROWS = [
    {
        "query_id": "a1",
        "query_duration_ms": 1500,
        "event_time": datetime(2024, 1, 2, 3, 4, 5),
        "tables": ["db.events", "db.users"],
    },
    {
        "query_id": "b2",
        "query_duration_ms": 2500,
        "event_time": datetime(2024, 1, 2, 3, 5, 0),
        "tables": [],
    },
]


def test_flatten_rows():
    flat = flatten_rows([{"tables": ["a", "b"], "settings": {"k": 1}, "n": 3}])
    assert flat == [{"tables": "a; b", "settings": '{"k": 1}', "n": 3}]


def test_csv_export():
    payload, media_type, extension = export_rows(ROWS, "csv")

    assert media_type == "text/csv"
    assert extension == "csv"
    lines = payload.decode("utf-8").splitlines()
    assert lines[0].replace('"', "") == "query_id,query_duration_ms,event_time,tables"
    assert "db.events; db.users" in lines[1]
    assert len(lines) == 3


def test_csv_export_without_rows():
    payload, _, _ = export_rows([], "CSV")
    assert payload == b""


def test_json_export():
    payload, media_type, extension = export_rows(ROWS, "json")

    assert (media_type, extension) == ("application/json", "json")
    decoded = json.loads(payload)
    assert decoded[0]["event_time"] == "2024-01-02T03:04:05"
    assert decoded[0]["tables"] == ["db.events", "db.users"]


def test_parquet_export():
    payload, media_type, extension = export_rows(ROWS, "parquet")

    assert extension == "parquet"
    assert media_type == "application/vnd.apache.parquet"
    table = pq.read_table(pa.BufferReader(payload))
    assert table.num_rows == 2
    assert table.column("query_id").to_pylist() == ["a1", "b2"]


def test_unsupported_format():
    with pytest.raises(ValueError, match="Unsupported export format"):
        export_rows(ROWS, "xlsx")


def test_ensure_arrow_table():
    table = pa.table({"x": [1]})
    assert ensure_arrow_table(table) is table
    assert ensure_arrow_table([]).num_rows == 0
    with pytest.raises(ValueError):
        ensure_arrow_table("not rows")
