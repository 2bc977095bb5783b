"""
Records describing what the connected ClickHouse server supports.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, ClassVar


@dataclass(frozen=True)
class ServerVersion:
    full: str
    major: int
    minor: int
    patch: int

    # Oldest server the dashboard supports; assumed whenever detection fails
    DEFAULT: ClassVar["ServerVersion"]

    def at_least(self, major: int, minor: int = 0) -> bool:
        return (self.major, self.minor) >= (major, minor)

    def to_dict(self) -> Dict[str, Any]:
        return {"full": self.full, "major": self.major, "minor": self.minor, "patch": self.patch}


ServerVersion.DEFAULT = ServerVersion(full="unknown", major=19, minor=0, patch=0)


@dataclass
class ServerCapabilityProfile:
    version: ServerVersion = ServerVersion.DEFAULT
    has_column_codec_info: bool = False
    has_dependencies_table: bool = False
    has_query_log: bool = False
    has_clusters: bool = False
    has_parts: bool = False
    has_processes: bool = False
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["version"] = self.version.to_dict()
        return data


@dataclass
class ClusterConfig:
    """Cluster topology as seen through system.clusters"""
    is_clustered: bool = False
    is_cloud: bool = False
    clusters: List[str] = field(default_factory=list)
    default_cluster: Optional[str] = None
    has_sharding: bool = False
    has_replicas: bool = False
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    has_system_clusters_access: bool = False
    permission_error: bool = False
    error: Optional[str] = None

    @classmethod
    def from_rows(cls, rows: List[Dict[str, Any]]) -> "ClusterConfig":
        if not rows:
            return cls(has_system_clusters_access=True)

        clusters: List[str] = []
        for row in rows:
            if row["cluster"] not in clusters:
                clusters.append(row["cluster"])
        first = clusters[0]

        return cls(
            is_clustered=True,
            is_cloud=False,
            clusters=clusters,
            default_cluster=first,
            has_sharding=any(int(row.get("shard_num") or 0) > 1 for row in rows),
            has_replicas=sum(1 for row in rows if row["cluster"] == first) > 1,
            nodes=rows,
            has_system_clusters_access=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
