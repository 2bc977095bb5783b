"""
QueryOutcome - result of a query executed without raising
"""
from dataclasses import dataclass
from typing import List, Any, Dict, Optional

from ..errors import ClickHouseQueryError, ErrorType


@dataclass
class QueryOutcome:
    success: bool
    data: Optional[List[Dict[str, Any]]] = None
    error: Optional[ClickHouseQueryError] = None

    @property
    def permission_denied(self) -> bool:
        return self.error is not None and self.error.type == ErrorType.PERMISSION_DENIED

    @property
    def quota_exceeded(self) -> bool:
        return self.error is not None and self.error.type == ErrorType.QUOTA_EXCEEDED
