"""
ClickHouse client and raw query execution.

Queries use ClickHouse server-side parameters (`{name:Type}`), so values never
enter the SQL text.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import clickhouse_connect

from app.core.config import settings
from app.core.time import ensure_utc

logger = logging.getLogger(__name__)

_client = None


def _build_client():
    url = urlparse(settings.CLICKHOUSE_URL)
    secure = url.scheme == "https"
    return clickhouse_connect.get_client(
        host=url.hostname or "localhost",
        port=url.port or (8443 if secure else 8123),
        username=url.username or settings.CLICKHOUSE_USER,
        password=url.password or settings.CLICKHOUSE_PASSWORD,
        database=(url.path or "").strip("/") or settings.CLICKHOUSE_DATABASE,
        secure=secure,
        connect_timeout=settings.CLICKHOUSE_CONNECT_TIMEOUT,
    )


def get_client():
    """Return the shared ClickHouse client, creating it on first use."""
    global _client
    if _client is None:
        if not settings.CLICKHOUSE_URL:
            raise RuntimeError("CLICKHOUSE_URL is not configured")
        _client = _build_client()
    return _client


def format_datetime(value: datetime) -> str:
    """Render a datetime as the UTC literal ClickHouse parses for DateTime64 params."""
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _coerce(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_datetime(value)
    return value


def raw_query(sql: str, params: Optional[Mapping[str, Any]] = None) -> list[dict[str, Any]]:
    """Execute a read query against ClickHouse and return rows as dicts."""
    parameters = {key: _coerce(value) for key, value in (params or {}).items() if value is not None}
    result = get_client().query(sql, parameters=parameters)
    rows = [dict(row) for row in result.named_results()]
    logger.debug("clickhouse raw_query returned %d rows", len(rows))
    return rows


def ping() -> bool:
    return bool(get_client().ping())
