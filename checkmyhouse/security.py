"""
security.py - API key guard and the connection session cookie
"""
import json
import logging
import os
from typing import Optional
from urllib.parse import quote, unquote

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader
from pydantic import ValidationError

from .types.connection import ConnectionSettings

logger = logging.getLogger(__name__)

API_KEY_ENV = "CHECKMYHOUSE_API_KEY"

SESSION_COOKIE = "clickhouse_config"
SESSION_MAX_AGE = 60 * 60 * 24  # seconds

# Define the API Key header scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key_header: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """
    Validate the API key when one is configured.

    With ``CHECKMYHOUSE_API_KEY`` unset the service is open and this
    returns None.
    """
    expected_key = os.getenv(API_KEY_ENV)

    if not expected_key:
        return None

    if api_key_header == expected_key:
        return api_key_header

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API Key"
    )


def encode_session(settings: ConnectionSettings) -> str:
    """Serialize connection settings into the cookie value."""
    return quote(json.dumps(settings.model_dump()))


def decode_session(value: Optional[str]) -> Optional[ConnectionSettings]:
    """Parse a cookie value back into settings; None when absent or malformed."""
    if not value:
        return None
    try:
        data = json.loads(unquote(value))
        if isinstance(data, dict) and "host" not in data and "url" in data:
            data["host"] = data.pop("url")
        return ConnectionSettings(**data)
    except (ValueError, TypeError, ValidationError) as e:
        logger.warning("Ignoring unreadable %s cookie: %s", SESSION_COOKIE, e)
        return None


def set_session_cookie(response, settings: ConnectionSettings, secure: bool = False):
    response.set_cookie(
        key=SESSION_COOKIE,
        value=encode_session(settings),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=secure,
        path="/",
    )


def clear_session_cookie(response):
    response.delete_cookie(key=SESSION_COOKIE, path="/")
