"""
Database configuration, session management and raw SQL execution.
"""
import logging
import re
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import DateTime, bindparam, create_engine, text
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from app.core.config import settings

logger = logging.getLogger(__name__)

# Reduce worst-case startup/readiness delays when the DB host is unreachable.
# (psycopg2 honors connect_timeout in seconds)
_connect_args = {}
if str(getattr(settings, "DATABASE_URL", "")).startswith(("postgresql://", "postgres://")):
    _connect_args = {"connect_timeout": 5}

# Create engine with connection pooling
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    poolclass=QueuePool,
    pool_size=10,
    max_overflow=20,
    pool_timeout=30,
    pool_pre_ping=True,  # Verify connections before use
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# {{name}} or {{name::type}}
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)(?:::([A-Za-z_][A-Za-z0-9_ ]*))?\s*\}\}")


def get_db():
    """Dependency for getting database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_name() -> str:
    """Name of the relational dialect behind SessionLocal (postgresql, mysql, sqlite)."""
    bind = SessionLocal.kw.get("bind") or engine
    return bind.dialect.name


def prepare_sql(sql: str, params: Optional[Mapping[str, Any]], dialect: str):
    """
    Rewrite `{{name}}` / `{{name::type}}` placeholders into bound parameters.

    Casts are only kept for PostgreSQL; MySQL and SQLite compare the raw
    values. Only names referenced by the SQL are bound, so callers may pass a
    superset of parameters. List/tuple values bind as expanding IN lists.
    """
    params = params or {}
    used: list[str] = []

    def _replace(match: re.Match) -> str:
        name, cast = match.group(1), match.group(2)
        if name not in params:
            raise ValueError(f"missing query parameter: {name}")
        if name not in used:
            used.append(name)
        if cast and dialect == "postgresql":
            return f"CAST(:{name} AS {cast.strip()})"
        return f":{name}"

    rewritten = _PLACEHOLDER.sub(_replace, sql)
    binds = []
    for name in used:
        value = params[name]
        if isinstance(value, (list, tuple, set)):
            binds.append(bindparam(name, list(value), expanding=True))
        elif isinstance(value, datetime):
            # Typed so each dialect renders it in its own storage format.
            binds.append(bindparam(name, value, type_=DateTime(timezone=dialect == "postgresql")))
        else:
            binds.append(bindparam(name, value))
    stmt = text(rewritten)
    if binds:
        stmt = stmt.bindparams(*binds)
    return stmt


def raw_query(sql: str, params: Optional[Mapping[str, Any]] = None) -> list[dict[str, Any]]:
    """Execute a read query against the relational database and return rows as dicts."""
    db = SessionLocal()
    try:
        stmt = prepare_sql(sql, params, db.get_bind().dialect.name)
        result = db.execute(stmt)
        rows = [dict(row) for row in result.mappings()]
        logger.debug("raw_query returned %d rows", len(rows))
        return rows
    finally:
        db.close()
