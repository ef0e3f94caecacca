"""
Analytics backend selection.

Every query function is written once per backend and routed through
`run_query`, which calls the implementation for the configured backend.
"""
from __future__ import annotations

import logging
from typing import Callable, Mapping, TypeVar

from app.core.config import settings

logger = logging.getLogger(__name__)

RELATIONAL = "relational"
CLICKHOUSE = "clickhouse"

T = TypeVar("T")


class ConfigurationError(RuntimeError):
    """No query implementation is registered for the active backend."""


def get_database_type() -> str:
    backend = str(settings.ANALYTICS_BACKEND or "auto").strip().lower()
    if backend == CLICKHOUSE:
        return CLICKHOUSE
    if backend == RELATIONAL:
        return RELATIONAL
    if backend != "auto":
        raise ConfigurationError(f"Unknown ANALYTICS_BACKEND: {settings.ANALYTICS_BACKEND!r}")
    return CLICKHOUSE if settings.CLICKHOUSE_URL else RELATIONAL


def run_query(queries: Mapping[str, Callable[[], T]]) -> T:
    """Invoke exactly one thunk, the one keyed by the active backend."""
    backend = get_database_type()
    thunk = queries.get(backend)
    if thunk is None:
        raise ConfigurationError(f"No query implementation for backend {backend!r}")
    logger.debug("run_query dispatching to %s", backend)
    return thunk()
