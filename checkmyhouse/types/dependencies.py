"""
Dependency edges between tables and views.
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass(frozen=True)
class TableRef:
    database: str
    table: str

    @property
    def node_id(self) -> str:
        return f"{self.database}.{self.table}"

    def to_dict(self) -> Dict[str, str]:
        return {"database": self.database, "table": self.table}


@dataclass
class Dependencies:
    sources: List[TableRef] = field(default_factory=list)
    targets: List[TableRef] = field(default_factory=list)
    tier: str = "none"

    @property
    def is_empty(self) -> bool:
        return not self.sources and not self.targets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sources": [ref.to_dict() for ref in self.sources],
            "targets": [ref.to_dict() for ref in self.targets],
        }
