"""
Utilities for exporting query results as CSV, JSON or Parquet files.
"""
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pyarrow as pa
import pyarrow.csv as pa_csv
import pyarrow.parquet as pq

EXPORT_FORMATS = {
    "csv": ("text/csv", "csv"),
    "json": ("application/json", "json"),
    "parquet": ("application/vnd.apache.parquet", "parquet"),
}


def ensure_arrow_table(rows: Any) -> pa.Table:
    """
    Ensure the input data is a PyArrow Table.

    Args:
        rows: pa.Table or list of row dicts

    Returns:
        pa.Table
    """
    if isinstance(rows, pa.Table):
        return rows

    if isinstance(rows, list):
        if not rows:
            return pa.Table.from_pydict({})
        return pa.Table.from_pylist(rows)

    raise ValueError(f"Could not convert {type(rows)} to PyArrow Table")


def _flat_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return "; ".join(".".join(v) if isinstance(v, (list, tuple)) else str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


def flatten_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """CSV has no nested types: arrays become ``;``-joined strings, maps JSON text."""
    return [{key: _flat_value(value) for key, value in row.items()} for row in rows]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def to_csv_bytes(rows: List[Dict[str, Any]]) -> bytes:
    table = ensure_arrow_table(flatten_rows(rows))
    sink = pa.BufferOutputStream()
    if table.num_columns:
        pa_csv.write_csv(table, sink)
    return sink.getvalue().to_pybytes()


def to_json_bytes(rows: List[Dict[str, Any]]) -> bytes:
    return json.dumps(rows, default=_json_default, indent=2).encode("utf-8")


def to_parquet_bytes(rows: List[Dict[str, Any]]) -> bytes:
    table = ensure_arrow_table(rows)
    sink = pa.BufferOutputStream()
    pq.write_table(table, sink)
    return sink.getvalue().to_pybytes()


def export_rows(rows: List[Dict[str, Any]], export_format: str) -> Tuple[bytes, str, str]:
    """
    Serialize rows for download.

    Returns:
        ``(payload, media_type, file_extension)``

    Raises:
        ValueError: for an unsupported format
    """
    export_format = (export_format or "").lower()
    if export_format not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {export_format}. Use one of {sorted(EXPORT_FORMATS)}")

    media_type, extension = EXPORT_FORMATS[export_format]
    if export_format == "csv":
        payload = to_csv_bytes(rows)
    elif export_format == "json":
        payload = to_json_bytes(rows)
    else:
        payload = to_parquet_bytes(rows)
    return payload, media_type, extension
