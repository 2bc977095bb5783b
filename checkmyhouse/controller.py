"""
DashboardController - one object coordinating the active ClickHouse connection.

Coordinates: Session settings -> Backend -> CapabilityProber -> QuerySelector
and answers every dashboard operation through the ResponseCache.
"""
import asyncio
import logging
from typing import Optional, Any, Dict, List, Callable, Awaitable, Tuple

from .backends.clickhouse_backend import ClickHouseBackend
from .cache.response_cache import ResponseCache, CacheTTL
from .config import DashboardConfig, get_config
from .errors import NotConnectedError, FeatureUnavailableError, classify_error
from .insights.recommendations import (
    annotate_queries,
    generate_mv_recommendations,
    generate_table_health_recommendations,
)
from .planner import queries
from .planner.capability_prober import CapabilityProber, build_cluster_query
from .planner.query_selector import DependencyResolver, select_columns_query
from .types.connection import ConnectionSettings
from .types.dependencies import TableRef
from .util.export_utils import EXPORT_FORMATS, export_rows
from .util.sql_builder import escape_identifier, render_template, safe_ident, validate_table_identifier

logger = logging.getLogger(__name__)

QUERY_LOG_TABLE = "system.query_log"


def _positive(name: str, value: int) -> int:
    if value is None or int(value) < 1:
        raise ValueError(f"{name} must be a positive integer")
    return int(value)


def _non_negative(name: str, value: int) -> int:
    if value is None or int(value) < 0:
        raise ValueError(f"{name} must not be negative")
    return int(value)


def node_type(engine: str) -> str:
    engine = engine or ""
    if "MaterializedView" in engine:
        return "materialized_view"
    if engine == "View":
        return "view"
    return "table"


class DashboardController:
    """
    Owns the connection state of the service.

    At most one backend is active at a time. Whenever the connection settings
    change the capability profile and all cached responses are dropped, since
    both describe the previous server.
    """

    def __init__(
        self,
        config: Optional[DashboardConfig] = None,
        cache: Optional[ResponseCache] = None,
        backend_factory: Optional[Callable[[ConnectionSettings], ClickHouseBackend]] = None,
        connection_tester: Optional[Callable[[ConnectionSettings], Tuple[bool, str]]] = None,
    ):
        self.config = config or get_config()
        self.cache = cache or ResponseCache(
            max_entries=self.config.cache_max_entries,
            soft_limit=self.config.cache_soft_limit,
        )
        self._backend_factory = backend_factory or self._create_backend
        self._connection_tester = connection_tester or self._test_connection

        self.backend: Optional[ClickHouseBackend] = None
        self.settings: Optional[ConnectionSettings] = None
        self.prober = CapabilityProber(None)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _create_backend(self, settings: ConnectionSettings) -> ClickHouseBackend:
        return ClickHouseBackend(
            settings=settings,
            query_settings=self.config.clickhouse_settings,
            query_timeout=self.config.query_timeout,
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
        )

    def _test_connection(self, settings: ConnectionSettings) -> Tuple[bool, str]:
        return ClickHouseBackend.test_connection(settings, query_timeout=min(self.config.query_timeout, 30))

    async def _activate(self, settings: ConnectionSettings) -> ClickHouseBackend:
        """
        Build a backend for ``settings`` and make it the active one.

        The previous connection stays in place when the new backend cannot
        be built.
        """
        loop = asyncio.get_running_loop()
        try:
            backend = await loop.run_in_executor(None, self._backend_factory, settings)
        except Exception as e:
            logger.warning("Could not create ClickHouse client for %s: %s", settings.host, e)
            raise classify_error(e) from e

        self._release()
        self.backend = backend
        self.settings = settings
        self.prober.rebind(backend)
        self.cache.clear()
        logger.info("Connected to ClickHouse at %s as %s", settings.host, settings.username)
        return backend

    def _release(self):
        if self.backend is not None:
            try:
                self.backend.close()
            except Exception as e:
                logger.debug("Error closing ClickHouse client: %s", e)
        self.backend = None
        self.settings = None

    def default_settings(self) -> Optional[ConnectionSettings]:
        """Connection configured through the environment, if any."""
        if not self.config.clickhouse_url:
            return None
        return ConnectionSettings(
            host=self.config.clickhouse_url,
            username=self.config.clickhouse_user,
            password=self.config.clickhouse_password,
            database=self.config.clickhouse_database,
        )

    async def connect(self, settings: ConnectionSettings) -> Dict[str, Any]:
        """Test the settings, then make them the active connection."""
        loop = asyncio.get_running_loop()
        ok, message = await loop.run_in_executor(None, self._connection_tester, settings)
        if not ok:
            logger.info("Connection test failed for %s: %s", settings.host, message)
            return {"success": False, "message": message}

        await self._activate(settings)
        cluster_config = await self.prober.detect_cluster_config()
        return {
            "success": True,
            "message": "Connected successfully",
            "cluster_config": cluster_config.to_dict(),
        }

    def disconnect(self) -> Dict[str, Any]:
        self._release()
        self.prober.rebind(None)
        self.cache.clear()
        return {"success": True, "message": "Disconnected"}

    async def ensure_connected(self, session: Optional[ConnectionSettings] = None) -> ClickHouseBackend:
        """
        Return the backend for a request.

        The session cookie wins over the active connection when they differ;
        with neither, the connection from the environment is used.

        Raises:
            NotConnectedError: nothing to connect with
            ClickHouseQueryError: the client for the new settings could not be created
        """
        if session is not None:
            if self.backend is None or session != self.settings:
                return await self._activate(session)
            return self.backend

        if self.backend is not None:
            return self.backend

        fallback = self.default_settings()
        if fallback is not None:
            return await self._activate(fallback)
        raise NotConnectedError()

    @property
    def is_connected(self) -> bool:
        return self.backend is not None

    def _require_backend(self) -> ClickHouseBackend:
        if self.backend is None:
            raise NotConnectedError()
        return self.backend

    def _days(self, days: Optional[int]) -> int:
        return _positive("days", self.config.default_days if days is None else days)

    # ------------------------------------------------------------------
    # Cache plumbing
    # ------------------------------------------------------------------

    async def _cached(self, prefix: str, params: Dict[str, Any], ttl: int,
                      producer: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        key = ResponseCache.generate_key(prefix, params)
        if self.config.enable_cache:
            hit = self.cache.get(key)
            if hit is not None:
                logger.debug("Cache hit for %s", key)
                return {**hit, "cached": True}

        data = await producer()
        if self.config.enable_cache:
            self.cache.set(key, data, ttl)
        return {**data, "cached": False}

    async def _require_query_log(self, feature: str):
        profile = await self.prober.get_profile()
        if not profile.has_query_log:
            raise FeatureUnavailableError(QUERY_LOG_TABLE, feature)

    async def _query_log_sql(self, template: str, params: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        cluster_config = await self.prober.detect_cluster_config()
        sql = build_cluster_query(template, QUERY_LOG_TABLE, cluster_config)
        return render_template(sql, params), cluster_config.to_dict()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_capabilities(self) -> Dict[str, Any]:
        self._require_backend()

        async def produce():
            profile = await self.prober.get_profile()
            return profile.to_dict()

        return await self._cached("capabilities", {}, CacheTTL.CAPABILITIES, produce)

    async def list_databases(self) -> Dict[str, Any]:
        backend = self._require_backend()

        async def produce():
            databases = await backend.execute_with_retry(queries.GET_DATABASES)

            counts_outcome = await backend.execute_safe(queries.GET_DATABASE_TABLE_COUNTS)
            counts = {}
            if counts_outcome.success:
                counts = {row["database"]: int(row["table_count"]) for row in counts_outcome.data}
            else:
                logger.info("Table counts unavailable: %s", counts_outcome.error.message)

            for database in databases:
                database["table_count"] = counts.get(database["name"], 0)
            return {"databases": databases, "total": len(databases)}

        return await self._cached("databases", {}, CacheTTL.DATABASES, produce)

    async def list_tables(self, database: str) -> Dict[str, Any]:
        backend = self._require_backend()
        if not database:
            raise ValueError("Database parameter is required")
        database = safe_ident(database)

        async def produce():
            sql = render_template(queries.GET_TABLES, {"database": escape_identifier(database)})
            tables = await backend.execute_with_retry(sql)
            return {"tables": tables, "total": len(tables)}

        return await self._cached("tables", {"database": database}, CacheTTL.TABLES, produce)

    async def get_table_details(self, database: str, table: str) -> Dict[str, Any]:
        """Columns (query variant picked from the capability profile) and active parts."""
        backend = self._require_backend()
        database, table = validate_table_identifier(database, table)
        params = {"database": database, "table": table}

        async def produce():
            variant, template = await select_columns_query(self.prober)
            columns = await backend.execute_with_retry(render_template(template, params))

            # Views and engines without parts have nothing in system.parts
            parts_outcome = await backend.execute_safe(render_template(queries.GET_TABLE_PARTS, params))
            parts = parts_outcome.data if parts_outcome.success else []

            return {
                "columns": columns,
                "parts": parts,
                "part_count": len(parts),
                "column_query": variant,
            }

        return await self._cached("table_details", params, CacheTTL.COLUMNS, produce)

    async def get_table_stats(self, database: str, table: str) -> Dict[str, Any]:
        backend = self._require_backend()
        database, table = validate_table_identifier(database, table)
        params = {"database": database, "table": table}

        async def produce():
            rows = await backend.execute_with_retry(render_template(queries.GET_TABLE_STATS, params))
            stats = rows[0] if rows else {}
            return {
                "stats": stats,
                "recommendations": generate_table_health_recommendations(stats),
            }

        return await self._cached("table_stats", params, CacheTTL.TABLE_STATS, produce)

    # ------------------------------------------------------------------
    # Query analyzer
    # ------------------------------------------------------------------

    async def query_analyzer_aggregate(
        self,
        days: Optional[int] = None,
        sort_column: str = "p99_duration_ms",
        limit: int = 100,
        offset: int = 0,
        min_executions: int = 5,
    ) -> Dict[str, Any]:
        """Query-log statistics grouped by normalized query hash."""
        backend = self._require_backend()
        if sort_column not in queries.AGGREGATE_SORT_COLUMNS:
            raise ValueError(f"Invalid sort_column: {sort_column}")
        params = {
            "days": self._days(days),
            "sort_column": sort_column,
            "limit": min(_positive("limit", limit), self.config.max_aggregate_limit),
            "offset": _non_negative("offset", offset),
            "min_executions": _non_negative("min_executions", min_executions),
        }

        async def produce():
            await self._require_query_log("Query Analyzer")
            sql, cluster = await self._query_log_sql(queries.QUERY_ANALYZER_AGGREGATE, params)
            rows = annotate_queries(await backend.execute_with_retry(sql))
            return {
                "queries": rows,
                "total": len(rows),
                "cluster": cluster,
                "params": params,
                "recommendations": generate_mv_recommendations(rows),
            }

        return await self._cached("query_analyzer", params, CacheTTL.QUERY_ANALYZER, produce)

    async def query_drilldown(
        self,
        query_hash: str,
        days: Optional[int] = None,
        sort_column: str = "query_duration_ms",
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Individual executions of one normalized query."""
        backend = self._require_backend()
        query_hash = str(query_hash or "").strip()
        if not query_hash:
            raise ValueError("Hash parameter is required")
        if not query_hash.isdigit():
            raise ValueError(f"Invalid query hash: {query_hash}")
        if sort_column not in queries.DRILLDOWN_SORT_COLUMNS:
            raise ValueError(f"Invalid sort_column: {sort_column}")
        params = {
            "hash": query_hash,
            "days": self._days(days),
            "sort_column": sort_column,
            "limit": min(_positive("limit", limit), self.config.max_drilldown_limit),
            "offset": _non_negative("offset", offset),
        }

        async def produce():
            await self._require_query_log("Query Drilldown")
            sql, _ = await self._query_log_sql(queries.QUERY_DRILLDOWN, params)
            executions = await backend.execute_with_retry(sql)
            return {"executions": executions, "total": len(executions), "hash": query_hash}

        return await self._cached("query_drilldown", params, CacheTTL.QUERY_DRILLDOWN, produce)

    async def slow_queries(self, days: Optional[int] = None, threshold_ms: Optional[int] = None,
                           limit: int = 100) -> Dict[str, Any]:
        backend = self._require_backend()
        if threshold_ms is None:
            threshold_ms = self.config.slow_query_threshold_ms
        params = {
            "days": self._days(days),
            "threshold_ms": _non_negative("threshold_ms", threshold_ms),
            "limit": min(_positive("limit", limit), self.config.max_aggregate_limit),
        }

        async def produce():
            await self._require_query_log("Slow Queries")
            sql, _ = await self._query_log_sql(queries.SLOW_QUERIES, params)
            outcome = await backend.execute_safe(sql)
            if not outcome.success:
                if outcome.permission_denied:
                    raise FeatureUnavailableError(QUERY_LOG_TABLE, "Slow Queries")
                raise outcome.error
            return {"queries": outcome.data, "total": len(outcome.data), "threshold_ms": params["threshold_ms"]}

        return await self._cached("slow_queries", params, CacheTTL.SLOW_QUERIES, produce)

    async def export_slow_queries(self, export_format: str, days: Optional[int] = None,
                                  threshold_ms: Optional[int] = None, limit: int = 100) -> Tuple[bytes, str, str]:
        """Returns ``(payload, media_type, filename)``."""
        export_format = (export_format or "").lower()
        if export_format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {export_format}")

        result = await self.slow_queries(days=days, threshold_ms=threshold_ms, limit=limit)
        payload, media_type, extension = export_rows(result["queries"], export_format)
        return payload, media_type, f"slow-queries.{extension}"

    # ------------------------------------------------------------------
    # Materialized views & lineage
    # ------------------------------------------------------------------

    async def list_materialized_views(self, database: Optional[str] = None) -> Dict[str, Any]:
        backend = self._require_backend()
        if database:
            database = safe_ident(database)

        async def produce():
            views = await backend.execute_with_retry(queries.GET_MATERIALIZED_VIEWS)
            if database:
                views = [view for view in views if view["database"] == database]

            resolver = DependencyResolver(backend, self.prober)
            for view, deps in await resolver.resolve_many(views):
                view.update(deps.to_dict())
                view["dependency_tier"] = deps.tier
            return {"views": views, "total": len(views)}

        return await self._cached("materialized_views", {"database": database or ""}, CacheTTL.TABLES, produce)

    async def get_lineage(self, database: Optional[str] = None) -> Dict[str, Any]:
        """Dependency graph of tables and views as nodes and edges."""
        backend = self._require_backend()
        if database:
            database = safe_ident(database)

        async def produce():
            database_filter = f"AND database = '{escape_identifier(database)}'" if database else ""
            objects = await backend.execute_with_retry(
                render_template(queries.GET_LINEAGE_OBJECTS, {"database_filter": database_filter})
            )

            # An unfiltered listing doubles as the metadata catalog
            resolver = DependencyResolver(backend, self.prober, catalog=None if database else objects)
            await resolver.preload_all_dependencies()
            return self._build_graph(await resolver.resolve_many(objects))

        return await self._cached("lineage", {"database": database or ""}, CacheTTL.TABLES, produce)

    @staticmethod
    def _build_graph(resolved) -> Dict[str, Any]:
        nodes: Dict[str, Dict[str, Any]] = {}
        edges: List[Dict[str, Any]] = []
        seen_edges = set()
        tiers: Dict[str, int] = {}

        for record, _ in resolved:
            ref = TableRef(record["database"], record["name"])
            nodes[ref.node_id] = {
                "id": ref.node_id,
                "type": node_type(record.get("engine")),
                "data": {"label": ref.table, "database": ref.database, "engine": record.get("engine")},
            }

        def add_edge(source: TableRef, target: TableRef):
            if (source.node_id, target.node_id) in seen_edges:
                return
            seen_edges.add((source.node_id, target.node_id))
            for ref in (source, target):
                if ref.node_id not in nodes:
                    nodes[ref.node_id] = {
                        "id": ref.node_id,
                        "type": "table",
                        "data": {"label": ref.table, "database": ref.database, "engine": None, "external": True},
                    }
            edges.append({
                "id": f"edge-{len(edges)}",
                "source": source.node_id,
                "target": target.node_id,
                "type": "smoothstep",
                "animated": True,
            })

        for record, deps in resolved:
            ref = TableRef(record["database"], record["name"])
            tiers[deps.tier] = tiers.get(deps.tier, 0) + 1
            for source in deps.sources:
                add_edge(source, ref)
            for target in deps.targets:
                add_edge(ref, target)

        node_list = list(nodes.values())
        return {
            "nodes": node_list,
            "edges": edges,
            "stats": {
                "total_nodes": len(node_list),
                "total_edges": len(edges),
                "tables": sum(1 for n in node_list if n["type"] == "table"),
                "views": sum(1 for n in node_list if n["type"] in ("materialized_view", "view")),
                "resolution": tiers,
            },
        }

    # ------------------------------------------------------------------
    # Service state
    # ------------------------------------------------------------------

    def get_cache_stats(self) -> Dict[str, Any]:
        stats = {
            "cache": self.cache.get_stats(),
            "backend": self.backend.get_stats() if self.backend is not None else None,
            "cached": False,
        }
        return stats
