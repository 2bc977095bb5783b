"""
errors.py - ClickHouse error classification and API error payloads

Upstream failures are folded into a small closed taxonomy. The taxonomy
decides whether the retry helper tries again, which HTTP status the API
returns, and what guidance (GRANT statement, retry hint) goes back to the UI.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


class ErrorType(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    QUERY_ERROR = "QUERY_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class ErrorCodes:
    ACCESS_DENIED = 497
    QUOTA_EXCEEDED = 201
    TIMEOUT_EXCEEDED = 159
    TOO_MANY_SIMULTANEOUS_QUERIES = 202
    UNKNOWN_TABLE = 60
    UNKNOWN_DATABASE = 81
    SYNTAX_ERROR = 62


_CODE_RE = re.compile(r'(?:Code:|error code)\s*(\d+)', re.IGNORECASE)
_QUOTA_RE = re.compile(r'(\w+)\s*=\s*(\d+)/(\d+)')
_SYSTEM_TABLE_RE = re.compile(r'system\.(\w+)')

# Error types the retry helper may try again
RETRYABLE_TYPES = frozenset({ErrorType.CONNECTION_ERROR, ErrorType.TIMEOUT, ErrorType.UNKNOWN})


class ClickHouseQueryError(Exception):
    """A classified ClickHouse failure."""

    def __init__(self, message: str, code: Any, error_type: ErrorType,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.type = error_type
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def can_retry(self) -> bool:
        return self.type in RETRYABLE_TYPES

    @property
    def user_friendly_message(self) -> str:
        return self.details.get("user_friendly_message") or self.message

    def __repr__(self):
        return f"ClickHouseQueryError(type={self.type.value}, code={self.code!r}, message={self.message!r})"


class NotConnectedError(Exception):
    """Raised when a request needs ClickHouse but no connection is configured."""

    def __init__(self, message: str = "ClickHouse client not initialized. Please connect first."):
        super().__init__(message)


class FeatureUnavailableError(Exception):
    """A feature needs a system table the connected user cannot read."""

    def __init__(self, table: str, feature: str):
        super().__init__(f"Insufficient permissions to access {table}")
        self.table = table
        self.feature = feature


def _extract_code(error: BaseException, message: str) -> Optional[int]:
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code
    if isinstance(code, str) and code.isdigit():
        return int(code)
    match = _CODE_RE.search(message)
    return int(match.group(1)) if match else None


def classify_error(error: BaseException) -> ClickHouseQueryError:
    """
    Map any exception raised while talking to ClickHouse onto the error taxonomy.

    Matching is done on the numeric server code (exception attribute or the
    ``Code: NNN`` prefix ClickHouse puts in its messages) and on message
    substrings. Already classified errors are returned unchanged.
    """
    if isinstance(error, ClickHouseQueryError):
        return error

    message = str(error) or error.__class__.__name__
    lower = message.lower()
    code = _extract_code(error, message)

    if ("access denied" in lower or "not enough privileges" in lower
            or code == ErrorCodes.ACCESS_DENIED):
        return ClickHouseQueryError(message, ErrorCodes.ACCESS_DENIED, ErrorType.PERMISSION_DENIED, {
            "user_friendly_message": "Insufficient permissions to access this resource",
            "can_retry": False,
            "requires_action": True,
        })

    if "quota" in lower or "has been exceeded" in lower or code == ErrorCodes.QUOTA_EXCEEDED:
        details: Dict[str, Any] = {
            "user_friendly_message": "Query quota exceeded. Please wait before retrying.",
            "can_retry": True,
            "retry_after": 60,
        }
        quota_match = _QUOTA_RE.search(message)
        if quota_match:
            details.update({
                "metric": quota_match.group(1),
                "current": int(quota_match.group(2)),
                "limit": int(quota_match.group(3)),
            })
        return ClickHouseQueryError(message, ErrorCodes.QUOTA_EXCEEDED, ErrorType.QUOTA_EXCEEDED, details)

    if "timeout" in lower or "timed out" in lower or code == ErrorCodes.TIMEOUT_EXCEEDED:
        return ClickHouseQueryError(message, ErrorCodes.TIMEOUT_EXCEEDED, ErrorType.TIMEOUT, {
            "user_friendly_message": "Query execution timed out",
            "can_retry": True,
        })

    if ("connection" in lower or "econnrefused" in lower or "network" in lower
            or isinstance(error, (ConnectionError, OSError))):
        return ClickHouseQueryError(message, "CONNECTION_ERROR", ErrorType.CONNECTION_ERROR, {
            "user_friendly_message": "Unable to connect to ClickHouse server",
            "can_retry": True,
        })

    if "syntax error" in lower or code == ErrorCodes.SYNTAX_ERROR:
        return ClickHouseQueryError(message, ErrorCodes.SYNTAX_ERROR, ErrorType.QUERY_ERROR, {
            "user_friendly_message": "Invalid query syntax",
            "can_retry": False,
        })

    return ClickHouseQueryError(message, code if code is not None else "UNKNOWN", ErrorType.UNKNOWN, {
        "user_friendly_message": "An unexpected error occurred",
        "can_retry": True,
    })


def is_permission_error(error: BaseException) -> bool:
    return classify_error(error).type == ErrorType.PERMISSION_DENIED


def is_quota_error(error: BaseException) -> bool:
    return classify_error(error).type == ErrorType.QUOTA_EXCEEDED


def can_retry_error(error: BaseException) -> bool:
    return classify_error(error).can_retry


# Columns each dashboard feature reads from the system tables
PERMISSION_REQUIREMENTS: Dict[str, Dict[str, Any]] = {
    "system.query_log": {
        "columns": [
            "event_date", "event_time", "query", "normalized_query_hash", "query_duration_ms",
            "memory_usage", "read_rows", "read_bytes", "written_rows", "written_bytes",
            "result_rows", "result_bytes", "exception", "user", "query_kind", "tables",
            "ProfileEvents", "thread_ids", "type", "is_initial_query", "peak_memory_usage",
            "query_id",
        ],
        "feature": "Query Analyzer",
        "description": "Analyze query performance and patterns",
        "documentation": "https://clickhouse.com/docs/en/operations/system-tables/query_log",
    },
    "system.clusters": {
        "columns": ["cluster", "shard_num", "replica_num", "host_name", "host_address", "port"],
        "feature": "Cluster Detection",
        "description": "Detect cluster configuration and topology",
        "documentation": "https://clickhouse.com/docs/en/operations/system-tables/clusters",
    },
    "system.parts": {
        "columns": [
            "partition", "name", "rows", "bytes_on_disk", "data_compressed_bytes",
            "data_uncompressed_bytes", "marks", "modification_time", "min_date", "max_date",
            "level", "primary_key_bytes_in_memory", "database", "table", "active",
        ],
        "feature": "Table Statistics",
        "description": "View table parts and storage details",
        "documentation": "https://clickhouse.com/docs/en/operations/system-tables/parts",
    },
    "system.tables": {
        "columns": [
            "database", "name", "engine", "total_rows", "total_bytes",
            "metadata_modification_time", "create_table_query",
        ],
        "feature": "Table Explorer",
        "description": "Browse tables and metadata",
        "documentation": "https://clickhouse.com/docs/en/operations/system-tables/tables",
    },
}


def build_grant_statement(table: str, columns: Optional[List[str]] = None, user: Optional[str] = None) -> str:
    """Synthesize the GRANT a DBA has to run so the feature can read ``table``."""
    selector = f"SELECT({', '.join(columns)})" if columns else "SELECT"
    grantee = user or "<user>"
    return f"GRANT {selector} ON {table} TO {grantee}"


def get_permission_requirements(system_table: Optional[str], user: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if not system_table or system_table not in PERMISSION_REQUIREMENTS:
        return None
    requirement = dict(PERMISSION_REQUIREMENTS[system_table])
    requirement["table"] = system_table
    requirement["grant"] = build_grant_statement(system_table, requirement["columns"], user)
    return requirement


def extract_system_table(message: str) -> Optional[str]:
    match = _SYSTEM_TABLE_RE.search(message or "")
    return f"system.{match.group(1)}" if match else None


def status_code_for(error: BaseException) -> int:
    """HTTP status the API answers with for a given failure."""
    parsed = classify_error(error)
    if parsed.type == ErrorType.PERMISSION_DENIED:
        return 403
    if parsed.type == ErrorType.QUOTA_EXCEEDED:
        return 429
    return 500


def format_error_response(error: BaseException, include_details: bool = False,
                          user: Optional[str] = None) -> Dict[str, Any]:
    """Shape a failure into the JSON body the UI understands."""
    parsed = classify_error(error)

    response: Dict[str, Any] = {
        "error": parsed.user_friendly_message,
        "type": parsed.type.value,
        "code": parsed.code,
        "timestamp": parsed.timestamp,
    }

    if include_details:
        response["details"] = parsed.details
        response["original_message"] = parsed.message

    if parsed.type == ErrorType.PERMISSION_DENIED:
        requirements = get_permission_requirements(extract_system_table(parsed.message), user)
        if requirements:
            response["requirements"] = requirements

    if parsed.type == ErrorType.QUOTA_EXCEEDED:
        response["retry_after"] = parsed.details.get("retry_after", 60)
        if "metric" in parsed.details:
            response["quota_info"] = {
                "metric": parsed.details["metric"],
                "current": parsed.details["current"],
                "limit": parsed.details["limit"],
            }

    return response


def create_permission_error_response(table: str, feature: str, user: Optional[str] = None) -> Dict[str, Any]:
    requirements = get_permission_requirements(table, user) or {
        "table": table,
        "feature": feature,
        "description": f"Access to {table} is required for this feature",
        "grant": build_grant_statement(table, None, user),
    }
    return {
        "error": f"Insufficient permissions to access {table}",
        "type": ErrorType.PERMISSION_DENIED.value,
        "feature": feature,
        "disabled": True,
        "requirements": requirements,
    }


def create_quota_exceeded_response(quota_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": "Query quota exceeded",
        "type": ErrorType.QUOTA_EXCEEDED.value,
        "retry_after": 60,
        "quota_info": quota_info or {},
        "message": ("You have exceeded your query quota. Please wait before retrying "
                    "or contact your administrator to increase limits."),
    }
