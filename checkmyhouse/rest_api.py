"""
rest_api.py - REST API for the CheckMyHouse dashboard

All routes live under /api/clickhouse and answer JSON shaped for the
browser UI. Failures are turned into the error payloads of ``errors.py``
by the exception handlers registered here.
"""
import logging
from typing import Dict, Any, Optional

from fastapi import FastAPI, Depends, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .cache.response_cache import RateLimit, RateLimits
from .config import DashboardConfig, get_config
from .controller import DashboardController
from .errors import (
    ClickHouseQueryError,
    FeatureUnavailableError,
    NotConnectedError,
    create_permission_error_response,
    format_error_response,
    status_code_for,
)
from .security import (
    SESSION_COOKIE,
    clear_session_cookie,
    decode_session,
    get_api_key,
    set_session_cookie,
)
from .types.connection import ConnectionSettings

logger = logging.getLogger(__name__)

PREFIX = "/api/clickhouse"
SERVICE_NAME = "checkmyhouse"
SERVICE_VERSION = "1.0"


class RateLimitExceeded(Exception):
    """Raised by the rate-limit dependency when a route's window is used up."""

    def __init__(self, status: Dict[str, Any]):
        super().__init__("Rate limit exceeded")
        self.status = status


class DashboardAPI:
    """REST API implementation with all dashboard endpoints"""

    def __init__(self, controller: DashboardController):
        self.controller = controller
        self.config: DashboardConfig = controller.config
        self.app = FastAPI(
            title="CheckMyHouse ClickHouse Dashboard API",
            dependencies=[Depends(get_api_key)],
        )
        self._setup_exception_handlers()
        self._setup_routes()

    def _current_user(self) -> Optional[str]:
        settings = self.controller.settings
        return settings.username if settings else None

    def _rate_limit(self, limit: RateLimit):
        """Dependency counting the request against the route's fixed window."""

        async def check(request: Request):
            if not self.config.enable_rate_limit:
                return
            status = self.controller.cache.check_rate_limit(
                request.url.path, limit.max_requests, limit.window
            )
            if not status["allowed"]:
                logger.warning("Rate limit exceeded for %s", request.url.path)
                raise RateLimitExceeded(status)

        return Depends(check)

    async def _connected(self, request: Request):
        session = decode_session(request.cookies.get(SESSION_COOKIE))
        return await self.controller.ensure_connected(session)

    def _setup_exception_handlers(self):
        """Map the error taxonomy onto HTTP responses"""

        @self.app.exception_handler(ClickHouseQueryError)
        async def clickhouse_error_handler(request: Request, exc: ClickHouseQueryError):
            status_code = status_code_for(exc)
            if status_code >= 500:
                logger.error("ClickHouse error on %s: %s", request.url.path, exc.message)
            content = format_error_response(exc, include_details=status_code == 429, user=self._current_user())
            headers = {"Retry-After": str(content["retry_after"])} if "retry_after" in content else None
            return JSONResponse(status_code=status_code, content=content, headers=headers)

        @self.app.exception_handler(FeatureUnavailableError)
        async def feature_unavailable_handler(request: Request, exc: FeatureUnavailableError):
            return JSONResponse(
                status_code=403,
                content=create_permission_error_response(exc.table, exc.feature, self._current_user()),
            )

        @self.app.exception_handler(NotConnectedError)
        async def not_connected_handler(request: Request, exc: NotConnectedError):
            return JSONResponse(status_code=401, content={"error": str(exc), "type": "NOT_CONNECTED"})

        @self.app.exception_handler(RateLimitExceeded)
        async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "type": "RATE_LIMIT_EXCEEDED",
                    "retry_after": exc.status["reset_in"],
                    "limit": exc.status["limit"],
                    "current": exc.status["current"],
                },
                headers={"Retry-After": str(exc.status["reset_in"])},
            )

        @self.app.exception_handler(ValueError)
        async def value_error_handler(request: Request, exc: ValueError):
            return JSONResponse(status_code=400, content={"error": str(exc), "type": "INVALID_REQUEST"})

        @self.app.exception_handler(RequestValidationError)
        async def validation_error_handler(request: Request, exc: RequestValidationError):
            messages = "; ".join(str(err.get("msg")) for err in exc.errors())
            return JSONResponse(status_code=400, content={"error": messages, "type": "INVALID_REQUEST"})

    def _setup_routes(self):
        """Setup all API routes"""

        @self.app.get(f"{PREFIX}/health")
        async def health_check():
            return {"status": "healthy", "service": SERVICE_NAME, "version": SERVICE_VERSION}

        @self.app.post(f"{PREFIX}/connect", dependencies=[self._rate_limit(RateLimits.DEFAULT)])
        async def connect_endpoint(settings: ConnectionSettings, response: Response):
            result = await self.controller.connect(settings)
            if not result["success"]:
                return JSONResponse(status_code=400, content={"error": result["message"]})

            set_session_cookie(response, settings, secure=self.config.cookie_secure)
            return result

        @self.app.post(f"{PREFIX}/disconnect", dependencies=[self._rate_limit(RateLimits.DEFAULT)])
        async def disconnect_endpoint(response: Response):
            result = self.controller.disconnect()
            clear_session_cookie(response)
            return result

        @self.app.get(f"{PREFIX}/check-auth", dependencies=[self._rate_limit(RateLimits.METADATA)])
        async def check_auth_endpoint(request: Request):
            session = decode_session(request.cookies.get(SESSION_COOKIE))
            if session is None:
                return JSONResponse(status_code=401, content={"authenticated": False})
            return {
                "authenticated": True,
                "host": session.host,
                "username": session.username,
                "database": session.database,
            }

        @self.app.get(
            f"{PREFIX}/capabilities",
            dependencies=[self._rate_limit(RateLimits.METADATA), Depends(self._connected)],
        )
        async def capabilities_endpoint():
            return await self.controller.get_capabilities()

        @self.app.get(
            f"{PREFIX}/databases",
            dependencies=[self._rate_limit(RateLimits.METADATA), Depends(self._connected)],
        )
        async def databases_endpoint():
            return await self.controller.list_databases()

        @self.app.get(
            f"{PREFIX}/tables",
            dependencies=[self._rate_limit(RateLimits.METADATA), Depends(self._connected)],
        )
        async def tables_endpoint(
            database: Optional[str] = None,
            table: Optional[str] = None,
            details: bool = False,
        ):
            if not database:
                raise ValueError("Database parameter is required")
            if table and details:
                return await self.controller.get_table_details(database, table)
            return await self.controller.list_tables(database)

        @self.app.get(
            f"{PREFIX}/stats",
            dependencies=[self._rate_limit(RateLimits.METADATA), Depends(self._connected)],
        )
        async def stats_endpoint(database: Optional[str] = None, table: Optional[str] = None):
            if not database or not table:
                raise ValueError("Database and table parameters are required")
            return await self.controller.get_table_stats(database, table)

        @self.app.get(
            f"{PREFIX}/query-analyzer/aggregate",
            dependencies=[self._rate_limit(RateLimits.HEAVY_QUERY), Depends(self._connected)],
        )
        async def aggregate_endpoint(
            days: Optional[int] = None,
            sort_column: str = "p99_duration_ms",
            limit: int = 100,
            offset: int = 0,
            min_executions: int = 5,
        ):
            return await self.controller.query_analyzer_aggregate(
                days=days,
                sort_column=sort_column,
                limit=limit,
                offset=offset,
                min_executions=min_executions,
            )

        @self.app.get(
            f"{PREFIX}/query-analyzer/drilldown",
            dependencies=[self._rate_limit(RateLimits.HEAVY_QUERY), Depends(self._connected)],
        )
        async def drilldown_endpoint(
            hash: Optional[str] = None,
            days: Optional[int] = None,
            sort_column: str = "query_duration_ms",
            limit: int = 100,
            offset: int = 0,
        ):
            return await self.controller.query_drilldown(
                hash, days=days, sort_column=sort_column, limit=limit, offset=offset
            )

        @self.app.get(
            f"{PREFIX}/query-analyzer/slow-queries",
            dependencies=[self._rate_limit(RateLimits.HEAVY_QUERY), Depends(self._connected)],
        )
        async def slow_queries_endpoint(
            days: Optional[int] = None, threshold_ms: Optional[int] = None, limit: int = 100
        ):
            return await self.controller.slow_queries(days=days, threshold_ms=threshold_ms, limit=limit)

        @self.app.get(
            f"{PREFIX}/query-analyzer/slow-queries/export",
            dependencies=[self._rate_limit(RateLimits.HEAVY_QUERY), Depends(self._connected)],
        )
        async def slow_queries_export_endpoint(
            export_format: str = Query("csv", alias="format"),
            days: Optional[int] = None,
            threshold_ms: Optional[int] = None,
            limit: int = 100,
        ):
            payload, media_type, filename = await self.controller.export_slow_queries(
                export_format, days=days, threshold_ms=threshold_ms, limit=limit
            )
            return Response(
                content=payload,
                media_type=media_type,
                headers={"Content-Disposition": f'attachment; filename="{filename}"'},
            )

        @self.app.get(
            f"{PREFIX}/materialized-views",
            dependencies=[self._rate_limit(RateLimits.HEAVY_QUERY), Depends(self._connected)],
        )
        async def materialized_views_endpoint(database: Optional[str] = None):
            return await self.controller.list_materialized_views(database)

        @self.app.get(
            f"{PREFIX}/lineage",
            dependencies=[self._rate_limit(RateLimits.HEAVY_QUERY), Depends(self._connected)],
        )
        async def lineage_endpoint(database: Optional[str] = None):
            return await self.controller.get_lineage(database)

        @self.app.get(f"{PREFIX}/cache/stats", dependencies=[self._rate_limit(RateLimits.DEFAULT)])
        async def cache_stats_endpoint():
            return self.controller.get_cache_stats()

    def get_app(self):
        """Get the FastAPI application instance"""
        return self.app


def create_api(config: Optional[DashboardConfig] = None) -> DashboardAPI:
    """Create the API with a controller built from the configuration"""
    controller = DashboardController(config=config or get_config())
    return DashboardAPI(controller)
