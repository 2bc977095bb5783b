"""
SQL builder utilities to help generate safe SQL fragments.

Identifiers that end up inside string literals of system-table queries are
validated against a strict pattern first and escaped as a second line.
"""
import re
from typing import Any, Dict, Tuple

identifier_re = re.compile(r'^[A-Za-z0-9_]+$')
_unsafe_chars_re = re.compile(r'[^A-Za-z0-9_]')


def escape_identifier(name: str) -> str:
    """Strip every character that is not alphanumeric or underscore."""
    return _unsafe_chars_re.sub('', str(name))


def safe_ident(name: str) -> str:
    if not name or not identifier_re.match(name):
        raise ValueError(f"Unsafe identifier: {name}")
    return name


def validate_table_identifier(database: str, table: str) -> Tuple[str, str]:
    """Validate a database/table pair and return the escaped names."""
    if not database:
        raise ValueError("Database name is required")
    if not table:
        raise ValueError("Table name is required")
    return escape_identifier(safe_ident(database)), escape_identifier(safe_ident(table))


def render_template(template: str, params: Dict[str, Any]) -> str:
    """
    Substitute ``{name}`` placeholders in a query template.

    Only the names present in ``params`` are replaced, so literal braces in
    the SQL (map access, lambdas) are left alone.
    """
    sql = template
    for name, value in params.items():
        sql = sql.replace('{' + name + '}', str(value))
    return sql
