"""
Tests for the SQL fragment helpers.
"""
import pytest

from checkmyhouse.util.sql_builder import escape_identifier, render_template, safe_ident, validate_table_identifier


def test_safe_ident():
    assert safe_ident("events_2024") == "events_2024"
    for bad in ["", "a.b", "x' OR '1'='1", "name;"]:
        with pytest.raises(ValueError):
            safe_ident(bad)


def test_escape_identifier():
    assert escape_identifier("ev'ents; --") == "events"


def test_validate_table_identifier():
    assert validate_table_identifier("db", "t") == ("db", "t")
    with pytest.raises(ValueError, match="Database name is required"):
        validate_table_identifier("", "t")
    with pytest.raises(ValueError, match="Table name is required"):
        validate_table_identifier("db", None)


def test_render_template_leaves_unknown_braces():
    sql = render_template("SELECT ProfileEvents['{x}'], {keep} FROM {table}", {"table": "system.query_log", "x": "A"})
    assert sql == "SELECT ProfileEvents['A'], {keep} FROM system.query_log"
