"""
ClickHouseBackend - read-only execution against the ClickHouse HTTP interface.

Features:
- clickhouse-connect client with per-connection query settings
- Rows returned as JSON-ready dicts
- Async execution in a thread pool
- Retry helper with linear backoff that fails fast on permission and quota errors
- Performance metrics
"""

import asyncio
import logging
import time
from typing import Any, List, Dict, Optional, Tuple

import clickhouse_connect
from clickhouse_connect.driver.client import Client

from ..errors import classify_error, ErrorType
from ..types.connection import ConnectionSettings
from ..types.query_result import QueryOutcome

logger = logging.getLogger(__name__)

DEFAULT_QUERY_SETTINGS = {
    "max_execution_time": 300,
    "max_memory_usage": 10000000000,
}


def create_client(
    settings: ConnectionSettings,
    query_settings: Optional[Dict[str, Any]] = None,
    query_timeout: int = 300,
) -> Client:
    """Open a clickhouse-connect client for the given connection settings."""
    return clickhouse_connect.get_client(
        **settings.client_kwargs(),
        settings=query_settings if query_settings is not None else DEFAULT_QUERY_SETTINGS,
        send_receive_timeout=query_timeout,
        autogenerate_session_id=False,
    )


class ClickHouseBackend:
    """
    Executes SQL against one ClickHouse server.
    """

    def __init__(
        self,
        settings: Optional[ConnectionSettings] = None,
        client: Optional[Client] = None,
        query_settings: Optional[Dict[str, Any]] = None,
        query_timeout: int = 300,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the backend.

        Args:
            settings: Connection settings used to open a client
            client: An existing clickhouse-connect client (takes precedence)
            query_settings: ClickHouse settings sent with every query
            query_timeout: HTTP send/receive timeout in seconds
            max_retries: Attempts made by ``execute_with_retry``
            retry_delay: Base delay for linear backoff, in seconds
        """
        if client is None:
            if settings is None:
                raise ValueError("Either settings or client is required")
            client = create_client(settings, query_settings, query_timeout)

        self.con = client
        self.settings = settings
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        # Track query stats
        self._query_count = 0
        self._error_count = 0
        self._total_time = 0.0

    def execute(self, sql: str, settings: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute a query and return its rows as dicts.

        Raises:
            ClickHouseQueryError: classified upstream failure
        """
        start_time = time.time()
        try:
            result = self.con.query(sql, settings=settings)
            rows = list(result.named_results())
        except Exception as e:
            self._error_count += 1
            parsed = classify_error(e)
            logger.debug("Query failed (%s): %s", parsed.type.value, parsed.message)
            raise parsed from e
        finally:
            self._query_count += 1
            self._total_time += time.time() - start_time

        return rows

    async def execute_async(self, sql: str, settings: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute query asynchronously in a thread pool.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.execute, sql, settings)

    async def execute_with_retry(
        self,
        sql: str,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute a query, retrying transient failures with linear backoff.

        Permission, quota and query errors are raised on the first attempt
        since repeating them cannot succeed.
        """
        attempts = max_retries if max_retries is not None else self.max_retries
        delay = retry_delay if retry_delay is not None else self.retry_delay

        for attempt in range(attempts):
            try:
                return await self.execute_async(sql, settings)
            except Exception as e:
                parsed = classify_error(e)
                if not parsed.can_retry or attempt == attempts - 1:
                    raise parsed
                logger.warning(
                    "Query attempt %d/%d failed (%s), retrying", attempt + 1, attempts, parsed.type.value
                )
                await asyncio.sleep(delay * (attempt + 1))

        raise ValueError("max_retries must be positive")

    async def execute_safe(self, sql: str, **kwargs) -> QueryOutcome:
        """Execute with retries and report failure in the outcome instead of raising."""
        try:
            data = await self.execute_with_retry(sql, **kwargs)
            return QueryOutcome(success=True, data=data)
        except Exception as e:
            parsed = classify_error(e)
            if parsed.type not in (ErrorType.PERMISSION_DENIED, ErrorType.QUOTA_EXCEEDED):
                logger.warning("Query failed: %s", parsed.message)
            return QueryOutcome(success=False, error=parsed)

    @staticmethod
    def test_connection(settings: ConnectionSettings, query_timeout: int = 30) -> Tuple[bool, str]:
        """Open a throwaway client and run ``SELECT 1``."""
        client = None
        try:
            client = create_client(settings, query_timeout=query_timeout)
            client.query("SELECT 1 AS test")
            return True, "Connection successful"
        except Exception as e:
            logger.info("Connection test against %s failed: %s", settings.host, e)
            return False, str(e)
        finally:
            if client is not None:
                client.close()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get backend performance statistics.
        """
        avg_time = self._total_time / self._query_count if self._query_count > 0 else 0

        return {
            "query_count": self._query_count,
            "error_count": self._error_count,
            "total_time": self._total_time,
            "avg_query_time": avg_time,
            "host": self.settings.host if self.settings else None,
        }

    def close(self):
        """Close the underlying client"""
        if self.con is not None and hasattr(self.con, 'close'):
            self.con.close()
        self.con = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
