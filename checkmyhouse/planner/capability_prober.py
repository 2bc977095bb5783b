"""
capability_prober.py - Feature detection against the connected server

Every probe degrades to "feature absent" instead of raising, so the query
selection built on top of it always has a usable answer. Results live for
as long as the connection does; ``rebind``/``invalidate`` drop them.
"""
import logging
import re
from typing import Any, Dict, Optional, Tuple

from ..errors import ErrorType, classify_error
from ..types.capability import ServerVersion, ServerCapabilityProfile, ClusterConfig
from ..util.sql_builder import escape_identifier, validate_table_identifier, render_template
from . import queries

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r'^(\d+)\.(\d+)\.(\d+)')

# Version that introduced system.columns.codec_expression
CODEC_MIN_VERSION = (20, 1)

# system tables whose readability is part of the capability profile
ACCESS_PROBES = {
    "has_query_log": "query_log",
    "has_clusters": "clusters",
    "has_parts": "parts",
    "has_processes": "processes",
}


def parse_version(version_string: Any) -> Optional[ServerVersion]:
    """Parse the ``major.minor.patch`` prefix of a version string, or None."""
    if not isinstance(version_string, str):
        return None
    match = _VERSION_RE.match(version_string.strip())
    if not match:
        return None
    return ServerVersion(
        full=version_string,
        major=int(match.group(1)),
        minor=int(match.group(2)),
        patch=int(match.group(3)),
    )


class CapabilityProber:
    """Probes one ClickHouse connection and remembers the answers."""

    def __init__(self, backend):
        self.backend = backend
        self._version: Optional[ServerVersion] = None
        self._tables: Dict[Tuple[str, str], bool] = {}
        self._columns: Dict[Tuple[str, str, str], bool] = {}
        self._access: Dict[str, bool] = {}
        self._profile: Optional[ServerCapabilityProfile] = None
        self._cluster_config: Optional[ClusterConfig] = None

    def invalidate(self):
        """Forget everything learned about the server."""
        self._version = None
        self._tables.clear()
        self._columns.clear()
        self._access.clear()
        self._profile = None
        self._cluster_config = None

    def rebind(self, backend):
        """Point the prober at a new connection."""
        self.invalidate()
        self.backend = backend

    @property
    def profile(self) -> Optional[ServerCapabilityProfile]:
        return self._profile

    async def probe_version(self) -> ServerVersion:
        if self._version is not None:
            return self._version

        try:
            rows = await self.backend.execute_async(queries.GET_VERSION)
            version = parse_version(rows[0].get("version")) if rows else None
        except Exception as e:
            logger.warning("Could not detect ClickHouse version: %s", e)
            version = None

        if version is None:
            logger.info("Unrecognized ClickHouse version, assuming %s.%s",
                        ServerVersion.DEFAULT.major, ServerVersion.DEFAULT.minor)
            version = ServerVersion.DEFAULT

        self._version = version
        return version

    async def probe_table_exists(self, database: str, table: str) -> bool:
        key = (database, table)
        if key in self._tables:
            return self._tables[key]

        try:
            db, tbl = validate_table_identifier(database, table)
            sql = render_template(queries.PROBE_TABLE_EXISTS, {"database": db, "table": tbl})
            rows = await self.backend.execute_async(sql)
            exists = len(rows) > 0
        except Exception as e:
            logger.debug("Table probe %s.%s failed: %s", database, table, e)
            exists = False

        self._tables[key] = exists
        return exists

    async def probe_column_exists(self, database: str, table: str, column: str) -> bool:
        key = (database, table, column)
        if key in self._columns:
            return self._columns[key]

        try:
            db, tbl = validate_table_identifier(database, table)
            sql = render_template(queries.PROBE_COLUMN_EXISTS, {
                "database": db,
                "table": tbl,
                "column": escape_identifier(column),
            })
            rows = await self.backend.execute_async(sql)
            exists = len(rows) > 0
        except Exception as e:
            logger.debug("Column probe %s.%s.%s failed: %s", database, table, column, e)
            exists = False

        self._columns[key] = exists
        return exists

    async def probe_access(self, system_table: str) -> bool:
        """Whether ``system.<system_table>`` can be read by the connected user."""
        if system_table in self._access:
            return self._access[system_table]

        sql = render_template(queries.PROBE_SYSTEM_TABLE_ACCESS, {"table": escape_identifier(system_table)})
        outcome = await self.backend.execute_safe(sql, max_retries=1)
        if not outcome.success:
            logger.info("system.%s is not accessible: %s", system_table, outcome.error.type.value)

        self._access[system_table] = outcome.success
        return outcome.success

    async def has_codec_support(self) -> bool:
        """Version check and direct column probe, OR'd since version parsing may fail."""
        version = await self.probe_version()
        if version.at_least(*CODEC_MIN_VERSION):
            return True
        return await self.probe_column_exists("system", "columns", "codec_expression")

    async def get_profile(self) -> ServerCapabilityProfile:
        if self._profile is not None:
            return self._profile

        profile = ServerCapabilityProfile(
            version=await self.probe_version(),
            has_column_codec_info=await self.has_codec_support(),
            has_dependencies_table=await self.probe_table_exists("system", "dependencies"),
        )
        for attribute, system_table in ACCESS_PROBES.items():
            setattr(profile, attribute, await self.probe_access(system_table))

        self._profile = profile
        return profile

    async def detect_cluster_config(self) -> ClusterConfig:
        if self._cluster_config is not None:
            return self._cluster_config

        try:
            rows = await self.backend.execute_async(queries.GET_CLUSTERS)
        except Exception as e:
            parsed = classify_error(e)
            if parsed.type == ErrorType.PERMISSION_DENIED:
                logger.info("system.clusters not accessible (permission denied) - assuming single node")
                self._cluster_config = ClusterConfig(
                    is_cloud=True,
                    has_system_clusters_access=False,
                    permission_error=True,
                )
                return self._cluster_config

            # Not cached: the next request gets another chance
            logger.error("Error detecting cluster config: %s", parsed.message)
            return ClusterConfig(is_cloud=True, has_system_clusters_access=False, error=parsed.message)

        self._cluster_config = ClusterConfig.from_rows(rows)
        return self._cluster_config


def build_cluster_query(template: str, table: str, cluster_config: ClusterConfig) -> str:
    """Fill ``{table}`` with the table itself or a clusterAllReplicas() source."""
    if not cluster_config.is_clustered or not cluster_config.default_cluster:
        return template.replace("{table}", table)

    cluster = escape_identifier(cluster_config.default_cluster)
    return template.replace("{table}", f"clusterAllReplicas('{cluster}', {table})")
