"""
Tests for server feature detection.
"""
import pytest

from checkmyhouse.planner import queries
from checkmyhouse.planner.capability_prober import CapabilityProber, parse_version, build_cluster_query
from checkmyhouse.types.capability import ServerVersion, ClusterConfig

CODEC_PROBE = "name = 'codec_expression'"
DEPENDENCIES_PROBE = "name = 'dependencies'"
PERMISSION_DENIED = Exception("Code: 497. DB::Exception: default: Not enough privileges")


def test_parse_version():
    version = parse_version("23.8.2.7")
    assert (version.major, version.minor, version.patch) == (23, 8, 2)
    assert version.full == "23.8.2.7"


@pytest.mark.parametrize("raw", ["", "unknown", "v23", None, 23.8])
def test_parse_version_rejects_garbage(raw):
    assert parse_version(raw) is None


def test_server_version_comparison():
    assert ServerVersion("20.1.0", 20, 1, 0).at_least(20, 1)
    assert not ServerVersion("19.17.4", 19, 17, 4).at_least(20, 1)
    assert ServerVersion.DEFAULT.full == "unknown"
    assert (ServerVersion.DEFAULT.major, ServerVersion.DEFAULT.minor) == (19, 0)


@pytest.mark.asyncio
async def test_version_probe_failure_returns_default(prober, fake_client):
    fake_client.on("version()", ConnectionError("Connection refused"))

    version = await prober.probe_version()

    assert version == ServerVersion.DEFAULT


@pytest.mark.asyncio
async def test_unparsable_version_returns_default(prober, fake_client):
    fake_client.on("version()", [{"version": "unknown-build"}])
    assert await prober.probe_version() == ServerVersion.DEFAULT


@pytest.mark.asyncio
async def test_version_is_probed_once(prober, fake_client):
    fake_client.on("version()", [{"version": "24.3.1.2672"}])

    await prober.probe_version()
    await prober.probe_version()

    assert fake_client.count("version()") == 1


@pytest.mark.asyncio
async def test_codec_support_from_version_skips_column_probe(prober, fake_client):
    fake_client.on("version()", [{"version": "21.3.1.1"}])

    assert await prober.has_codec_support() is True
    assert fake_client.count(CODEC_PROBE) == 0


@pytest.mark.asyncio
async def test_codec_support_from_column_probe(prober, fake_client):
    fake_client.on("version()", [{"version": "19.17.4.11"}])
    fake_client.on(CODEC_PROBE, [{"1": 1}])

    assert await prober.has_codec_support() is True


@pytest.mark.asyncio
async def test_no_codec_when_version_unknown_and_column_missing(prober, fake_client):
    fake_client.on("version()", [{"version": "garbage"}])

    assert await prober.has_codec_support() is False


@pytest.mark.asyncio
async def test_table_probe_failure_means_absent(prober, fake_client):
    fake_client.on(DEPENDENCIES_PROBE, PERMISSION_DENIED)

    assert await prober.probe_table_exists("system", "dependencies") is False
    assert await prober.probe_table_exists("system", "dependencies") is False
    assert fake_client.count(DEPENDENCIES_PROBE) == 1


@pytest.mark.asyncio
async def test_access_probe_is_not_retried(prober, fake_client):
    fake_client.on("FROM system.query_log LIMIT 1", ConnectionError("Connection refused"))

    assert await prober.probe_access("query_log") is False
    assert fake_client.count("FROM system.query_log LIMIT 1") == 1


@pytest.mark.asyncio
async def test_profile(prober, fake_client):
    fake_client.on("version()", [{"version": "23.8.1.1"}])
    fake_client.on(DEPENDENCIES_PROBE, [{"1": 1}])
    fake_client.on("FROM system.query_log LIMIT 1", PERMISSION_DENIED)

    profile = await prober.get_profile()

    assert profile.version.major == 23
    assert profile.has_column_codec_info is True
    assert profile.has_dependencies_table is True
    assert profile.has_query_log is False
    assert profile.has_clusters is True
    assert profile.to_dict()["version"]["full"] == "23.8.1.1"


@pytest.mark.asyncio
async def test_profile_is_reused_until_invalidated(prober, fake_client):
    first = await prober.get_profile()
    assert await prober.get_profile() is first
    assert fake_client.count("version()") == 1

    prober.invalidate()
    second = await prober.get_profile()

    assert second is not first
    assert fake_client.count("version()") == 2


@pytest.mark.asyncio
async def test_rebind_forgets_previous_server(prober, fake_client, backend):
    fake_client.on("version()", [{"version": "23.8.1.1"}])
    await prober.get_profile()

    prober.rebind(backend)

    assert prober.profile is None


@pytest.mark.asyncio
async def test_detect_cluster_config(prober, fake_client):
    fake_client.on("FROM system.clusters", [
        {"cluster": "main", "shard_num": 1, "replica_num": 1, "host_name": "ch1"},
        {"cluster": "main", "shard_num": 1, "replica_num": 2, "host_name": "ch2"},
        {"cluster": "other", "shard_num": 2, "replica_num": 1, "host_name": "ch3"},
    ])

    config = await prober.detect_cluster_config()

    assert config.is_clustered is True
    assert config.clusters == ["main", "other"]
    assert config.default_cluster == "main"
    assert config.has_replicas is True
    assert config.has_sharding is True


@pytest.mark.asyncio
async def test_cluster_permission_denied_is_cached_as_single_node(prober, fake_client):
    fake_client.on("FROM system.clusters", PERMISSION_DENIED)

    config = await prober.detect_cluster_config()
    await prober.detect_cluster_config()

    assert config.is_cloud is True
    assert config.permission_error is True
    assert config.has_system_clusters_access is False
    assert fake_client.count("FROM system.clusters") == 1


@pytest.mark.asyncio
async def test_cluster_detection_error_is_not_cached(prober, fake_client):
    fake_client.on("FROM system.clusters", ConnectionError("Connection refused"))

    config = await prober.detect_cluster_config()
    await prober.detect_cluster_config()

    assert config.error
    assert config.is_clustered is False
    assert fake_client.count("FROM system.clusters") == 2


def test_build_cluster_query():
    clustered = ClusterConfig(is_clustered=True, default_cluster="main")
    sql = build_cluster_query(queries.SLOW_QUERIES, "system.query_log", clustered)
    assert "FROM clusterAllReplicas('main', system.query_log)" in sql

    single = ClusterConfig()
    sql = build_cluster_query(queries.SLOW_QUERIES, "system.query_log", single)
    assert "FROM system.query_log" in sql
    assert "clusterAllReplicas" not in sql
