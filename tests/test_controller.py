"""
Tests for DashboardController: connection state, caching and the dashboard operations.
"""
import threading

import pytest
import pytest_asyncio

from checkmyhouse.backends.clickhouse_backend import ClickHouseBackend
from checkmyhouse.config import DashboardConfig
from checkmyhouse.controller import DashboardController, node_type
from checkmyhouse.errors import ClickHouseQueryError, ErrorType, FeatureUnavailableError, NotConnectedError
from checkmyhouse.planner import queries
from checkmyhouse.planner.query_selector import COLUMNS_BASIC, TIER_CREATE_QUERY, TIER_METADATA
from checkmyhouse.types.connection import ConnectionSettings
from checkmyhouse.util.sql_builder import render_template

from conftest import SETTINGS

PERMISSION_DENIED = Exception("Code: 497. DB::Exception: default: Not enough privileges")
QUERY_LOG_PROBE = "FROM system.query_log LIMIT 1"
LINEAGE_SQL = render_template(queries.GET_LINEAGE_OBJECTS, {"database_filter": ""})

DATABASES = [
    {"name": "analytics", "engine": "Atomic"},
    {"name": "default", "engine": "Atomic"},
]

MV_RECORD = {
    "database": "analytics",
    "name": "events_mv",
    "engine": "MaterializedView",
    "create_table_query": (
        "CREATE MATERIALIZED VIEW analytics.events_mv TO analytics.events_daily "
        "AS SELECT toDate(ts) AS day, count() AS c FROM raw.events GROUP BY day"
    ),
    "dependencies_database": [],
    "dependencies_table": [],
}


@pytest_asyncio.fixture
async def connected(controller):
    await controller.connect(SETTINGS)
    return controller


# ----------------------------------------------------------------------
# Connection lifecycle
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_success(controller, fake_client):
    fake_client.on("FROM system.clusters", PERMISSION_DENIED)

    result = await controller.connect(SETTINGS)

    assert result["success"] is True
    assert result["cluster_config"]["is_cloud"] is True
    assert controller.is_connected
    assert controller.settings == SETTINGS


@pytest.mark.asyncio
async def test_connect_failure_keeps_previous_state(config, fake_client):
    controller = DashboardController(
        config=config,
        backend_factory=lambda settings: ClickHouseBackend(client=fake_client, retry_delay=0),
        connection_tester=lambda settings: (False, "Authentication failed"),
    )

    result = await controller.connect(SETTINGS)

    assert result == {"success": False, "message": "Authentication failed"}
    assert not controller.is_connected


@pytest.mark.asyncio
async def test_operations_require_connection(controller):
    with pytest.raises(NotConnectedError):
        await controller.list_databases()
    with pytest.raises(NotConnectedError):
        await controller.ensure_connected()


@pytest.mark.asyncio
async def test_environment_connection_is_the_fallback(fake_client):
    controller = DashboardController(
        config=DashboardConfig(clickhouse_url="http://ch.internal:8123", clickhouse_user="monitor", retry_delay=0),
        backend_factory=lambda settings: ClickHouseBackend(settings=settings, client=fake_client, retry_delay=0),
    )

    backend = await controller.ensure_connected()

    assert backend is controller.backend
    assert controller.settings.host == "http://ch.internal:8123"
    assert controller.settings.username == "monitor"


@pytest.mark.asyncio
async def test_session_settings_replace_active_connection(connected):
    first = connected.backend
    other = ConnectionSettings(host="https://ch.example.com", username="reader")

    assert await connected.ensure_connected(SETTINGS) is first
    assert await connected.ensure_connected(other) is not first
    assert connected.settings == other


@pytest.mark.asyncio
async def test_failed_backend_creation_keeps_active_connection(fake_client):
    def factory(settings):
        if "down" in settings.host:
            raise OSError("Connection refused")
        return ClickHouseBackend(settings=settings, client=fake_client, retry_delay=0)

    controller = DashboardController(
        config=DashboardConfig(retry_delay=0),
        backend_factory=factory,
        connection_tester=lambda settings: (True, "Connection successful"),
    )
    await controller.connect(SETTINGS)
    fake_client.on("FROM system.databases", DATABASES)
    await controller.list_databases()
    active = controller.backend

    with pytest.raises(ClickHouseQueryError) as exc_info:
        await controller.ensure_connected(ConnectionSettings(host="http://down:8123", username="default"))

    assert exc_info.value.type == ErrorType.CONNECTION_ERROR
    assert controller.backend is active
    assert controller.settings == SETTINGS
    assert controller.prober.backend is active
    assert controller.cache.get_stats()["size"] == 1


@pytest.mark.asyncio
async def test_backend_is_built_off_the_event_loop_thread(fake_client):
    factory_threads = []

    def factory(settings):
        factory_threads.append(threading.get_ident())
        return ClickHouseBackend(settings=settings, client=fake_client, retry_delay=0)

    controller = DashboardController(
        config=DashboardConfig(retry_delay=0),
        backend_factory=factory,
        connection_tester=lambda settings: (True, "Connection successful"),
    )

    await controller.connect(SETTINGS)
    await controller.ensure_connected(ConnectionSettings(host="https://ch.example.com", username="reader"))

    assert len(factory_threads) == 2
    assert threading.get_ident() not in factory_threads


@pytest.mark.asyncio
async def test_disconnect(connected):
    result = connected.disconnect()

    assert result["success"] is True
    assert not connected.is_connected
    with pytest.raises(NotConnectedError):
        await connected.get_capabilities()


# ----------------------------------------------------------------------
# Caching
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_request_is_served_from_cache(connected, fake_client):
    fake_client.on("FROM system.databases", DATABASES)
    fake_client.on("GROUP BY database", [{"database": "analytics", "table_count": "12"}])

    first = await connected.list_databases()
    second = await connected.list_databases()

    assert first["cached"] is False
    assert second["cached"] is True
    assert second["databases"] == first["databases"]
    assert fake_client.count("FROM system.databases") == 1


@pytest.mark.asyncio
async def test_reconnect_clears_cache(connected, fake_client):
    fake_client.on("FROM system.databases", DATABASES)
    await connected.list_databases()

    await connected.connect(ConnectionSettings(host="https://ch.example.com", username="reader"))

    assert connected.cache.get_stats()["size"] == 0
    assert (await connected.list_databases())["cached"] is False
    assert fake_client.count("FROM system.databases") == 2


@pytest.mark.asyncio
async def test_cache_can_be_disabled(fake_client):
    controller = DashboardController(
        config=DashboardConfig(enable_cache=False, retry_delay=0),
        backend_factory=lambda settings: ClickHouseBackend(client=fake_client, retry_delay=0),
        connection_tester=lambda settings: (True, "Connection successful"),
    )
    await controller.connect(SETTINGS)

    await controller.list_databases()
    result = await controller.list_databases()

    assert result["cached"] is False
    assert fake_client.count("FROM system.databases") == 2


# ----------------------------------------------------------------------
# Metadata
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_databases_table_counts(connected, fake_client):
    fake_client.on("FROM system.databases", DATABASES)
    fake_client.on("GROUP BY database", [{"database": "analytics", "table_count": "12"}])

    result = await connected.list_databases()

    assert result["total"] == 2
    assert [db["table_count"] for db in result["databases"]] == [12, 0]


@pytest.mark.asyncio
async def test_list_databases_without_table_counts(connected, fake_client):
    fake_client.on("FROM system.databases", DATABASES)
    fake_client.on("GROUP BY database", PERMISSION_DENIED)

    result = await connected.list_databases()

    assert [db["table_count"] for db in result["databases"]] == [0, 0]


@pytest.mark.asyncio
async def test_list_tables_validates_database(connected, fake_client):
    with pytest.raises(ValueError, match="Database parameter is required"):
        await connected.list_tables("")
    with pytest.raises(ValueError):
        await connected.list_tables("analytics; DROP TABLE x")

    fake_client.on("WHERE database = 'analytics'", [{"database": "analytics", "name": "events"}])
    result = await connected.list_tables("analytics")
    assert result["tables"][0]["name"] == "events"


@pytest.mark.asyncio
async def test_table_details_basic_columns_without_parts(connected, fake_client):
    fake_client.on("version()", [{"version": "unknown"}])
    fake_client.on("FROM system.columns", [{"name": "ts", "type": "DateTime"}])
    fake_client.on("name = 'codec_expression'", [])
    fake_client.on("FROM system.parts", PERMISSION_DENIED)

    result = await connected.get_table_details("analytics", "events")

    assert result["column_query"] == COLUMNS_BASIC
    assert result["columns"] == [{"name": "ts", "type": "DateTime"}]
    assert result["parts"] == []
    assert result["part_count"] == 0
    assert not any("codec_expression," in sql for sql in fake_client.queries)


@pytest.mark.asyncio
async def test_table_stats_recommendations(connected, fake_client):
    fake_client.on("count(DISTINCT partition)", [{
        "total_parts": 400,
        "total_partitions": 1,
        "total_compressed_bytes": 10,
        "total_uncompressed_bytes": 100,
    }])

    result = await connected.get_table_stats("analytics", "events")

    assert result["stats"]["total_parts"] == 400
    assert [r["title"] for r in result["recommendations"]] == ["Excessive Parts"]


@pytest.mark.asyncio
async def test_capabilities(connected, fake_client):
    fake_client.on("version()", [{"version": "23.8.1.1"}])

    result = await connected.get_capabilities()

    assert result["version"]["major"] == 23
    assert result["has_column_codec_info"] is True
    assert result["cached"] is False


# ----------------------------------------------------------------------
# Query analyzer
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_aggregate_rejects_unknown_sort_column(connected):
    with pytest.raises(ValueError, match="Invalid sort_column"):
        await connected.query_analyzer_aggregate(sort_column="query; DROP TABLE x")


@pytest.mark.asyncio
async def test_aggregate_clamps_limit(connected, fake_client):
    fake_client.on("GROUP BY normalized_query_hash", [{"normalized_query_hash": 1, "p99_duration_ms": 50}])

    result = await connected.query_analyzer_aggregate(limit=10000)

    assert result["params"]["limit"] == 500
    assert fake_client.count("LIMIT 500 OFFSET 0") == 1
    assert result["queries"][0]["performance"]["duration"] == "excellent"
    assert result["recommendations"] == []


@pytest.mark.asyncio
async def test_aggregate_reads_all_replicas_on_cluster(connected, fake_client):
    fake_client.on("FROM system.clusters", [
        {"cluster": "main", "shard_num": 1, "replica_num": 1, "host_name": "ch1"},
        {"cluster": "main", "shard_num": 1, "replica_num": 2, "host_name": "ch2"},
    ])
    connected.prober.invalidate()

    result = await connected.query_analyzer_aggregate()

    assert result["cluster"]["is_clustered"] is True
    assert fake_client.count("FROM clusterAllReplicas('main', system.query_log)") == 1


@pytest.mark.asyncio
async def test_configured_default_days_window(fake_client):
    controller = DashboardController(
        config=DashboardConfig(default_days=3, retry_delay=0),
        backend_factory=lambda settings: ClickHouseBackend(settings=settings, client=fake_client, retry_delay=0),
        connection_tester=lambda settings: (True, "Connection successful"),
    )
    await controller.connect(SETTINGS)

    result = await controller.query_analyzer_aggregate()
    await controller.slow_queries()
    await controller.query_drilldown("42", days=14)

    assert result["params"]["days"] == 3
    assert fake_client.count("INTERVAL 3 DAY") == 2
    assert fake_client.count("INTERVAL 14 DAY") == 1
    with pytest.raises(ValueError, match="days must be a positive integer"):
        await controller.slow_queries(days=0)


@pytest.mark.asyncio
async def test_analyzer_without_query_log(connected, fake_client):
    fake_client.on(QUERY_LOG_PROBE, PERMISSION_DENIED)

    with pytest.raises(FeatureUnavailableError) as exc_info:
        await connected.query_analyzer_aggregate()

    assert exc_info.value.table == "system.query_log"
    assert exc_info.value.feature == "Query Analyzer"


@pytest.mark.asyncio
async def test_drilldown_validates_hash(connected):
    with pytest.raises(ValueError, match="Hash parameter is required"):
        await connected.query_drilldown("")
    with pytest.raises(ValueError, match="Invalid query hash"):
        await connected.query_drilldown("1 OR 1=1")


@pytest.mark.asyncio
async def test_drilldown(connected, fake_client):
    fake_client.on("normalized_query_hash = 1234567890", [{"query_id": "q1"}, {"query_id": "q2"}])

    result = await connected.query_drilldown("1234567890", limit=5000)

    assert result["total"] == 2
    assert result["hash"] == "1234567890"
    assert fake_client.count("LIMIT 1000 OFFSET 0") == 1


@pytest.mark.asyncio
async def test_slow_queries_permission_denied(connected, fake_client):
    fake_client.on("query_duration_ms > 1000", PERMISSION_DENIED)

    with pytest.raises(FeatureUnavailableError):
        await connected.slow_queries()


@pytest.mark.asyncio
async def test_slow_queries_other_errors_propagate(connected, fake_client):
    fake_client.on("query_duration_ms > 1000", Exception("Code: 62. DB::Exception: Syntax error"))

    with pytest.raises(ClickHouseQueryError):
        await connected.slow_queries()


@pytest.mark.asyncio
async def test_export_slow_queries(connected, fake_client):
    fake_client.on("query_duration_ms > 2000", [{"query_id": "q1", "query_duration_ms": 2500}])

    payload, media_type, filename = await connected.export_slow_queries("csv", threshold_ms=2000)

    assert media_type == "text/csv"
    assert filename == "slow-queries.csv"
    assert b"q1" in payload

    with pytest.raises(ValueError):
        await connected.export_slow_queries("xml")


# ----------------------------------------------------------------------
# Materialized views & lineage
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_materialized_views_resolve_dependencies(connected, fake_client):
    fake_client.on("engine IN ('MaterializedView')", [MV_RECORD])

    result = await connected.list_materialized_views()
    view = result["views"][0]

    assert view["dependency_tier"] == TIER_CREATE_QUERY
    assert view["sources"] == [{"database": "raw", "table": "events"}]
    assert view["targets"] == [{"database": "analytics", "table": "events_daily"}]

    filtered = await connected.list_materialized_views("default")
    assert filtered["total"] == 0


@pytest.mark.asyncio
async def test_lineage_graph(connected, fake_client):
    fake_client.on(LINEAGE_SQL, [
        {
            "database": "raw",
            "name": "events",
            "engine": "MergeTree",
            "create_table_query": "CREATE TABLE raw.events (ts DateTime) ENGINE = MergeTree ORDER BY ts",
            "dependencies_database": [],
            "dependencies_table": [],
        },
        {**MV_RECORD, "dependencies_database": ["raw"], "dependencies_table": ["events"]},
    ])

    graph = await connected.get_lineage()

    assert {node["id"]: node["type"] for node in graph["nodes"]} == {
        "raw.events": "table",
        "analytics.events_mv": "materialized_view",
    }
    assert [(e["source"], e["target"]) for e in graph["edges"]] == [("raw.events", "analytics.events_mv")]
    assert graph["stats"]["total_edges"] == 1
    assert graph["stats"]["resolution"] == {TIER_METADATA: 2}


@pytest.mark.asyncio
async def test_lineage_adds_external_nodes(connected, fake_client):
    fake_client.on("AND database = 'analytics'", [MV_RECORD])

    graph = await connected.get_lineage("analytics")

    ids = {node["id"] for node in graph["nodes"]}
    assert ids == {"analytics.events_mv", "raw.events", "analytics.events_daily"}
    assert graph["stats"]["views"] == 1
    assert graph["stats"]["tables"] == 2


def test_node_type():
    assert node_type("MaterializedView") == "materialized_view"
    assert node_type("View") == "view"
    assert node_type("ReplicatedMergeTree") == "table"
    assert node_type(None) == "table"


def test_cache_stats(controller):
    stats = controller.get_cache_stats()
    assert stats["backend"] is None
    assert stats["cache"]["size"] == 0
