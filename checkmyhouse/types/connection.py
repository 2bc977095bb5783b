"""
Connection settings supplied by the user on connect.
"""
from typing import Optional, Dict, Any
from urllib.parse import urlparse

from pydantic import BaseModel, field_validator


class ConnectionSettings(BaseModel):
    host: str
    username: str = "default"
    password: Optional[str] = ""
    database: Optional[str] = "default"

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError("Invalid host URL")
        return value.rstrip("/")

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        if not value:
            raise ValueError("Username is required")
        return value

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``clickhouse_connect.get_client``."""
        parsed = urlparse(self.host)
        secure = parsed.scheme == "https"
        return {
            "host": parsed.hostname,
            "port": parsed.port or (8443 if secure else 8123),
            "username": self.username,
            "password": self.password or "",
            "database": self.database or "default",
            "secure": secure,
        }
