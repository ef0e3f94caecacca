"""
SQL fragments that differ between backends.

Relational queries run on PostgreSQL in production, MySQL where deployed, and
SQLite in tests; the columnar backend is ClickHouse. Each helper takes the
dialect name (`postgresql`, `mysql`, `sqlite`, `clickhouse`) and returns an
expression string. Helpers never receive user values, only column names and
fixed keywords.
"""
from __future__ import annotations

from typing import Literal, Optional

Dialect = Literal["postgresql", "mysql", "sqlite", "clickhouse"]
TruncUnit = Literal["hour", "day", "week", "month"]

TRUNC_UNITS = ("hour", "day", "week", "month")

_CLICKHOUSE_TYPES = {
    "uuid": "UUID",
    "timestamp": "DateTime64",
    "timestamptz": "DateTime64",
    "text": "String",
    "int": "UInt32",
    "bigint": "UInt64",
    "smallint": "UInt8",
}


def param(name: str, dialect: str, sql_type: Optional[str] = None) -> str:
    """
    Placeholder for a bound value.

    Relational: `{{name}}` or `{{name::type}}`. ClickHouse: `{name:Type}`,
    defaulting to String.
    """
    if dialect == "clickhouse":
        ch_type = _CLICKHOUSE_TYPES.get((sql_type or "text").lower(), sql_type or "String")
        return f"{{{name}:{ch_type}}}"
    if sql_type:
        return f"{{{{{name}::{sql_type}}}}}"
    return f"{{{{{name}}}}}"


def date_trunc(column: str, unit: str, dialect: str) -> str:
    """Truncate a timestamp to the start of its hour/day/week(Monday)/month."""
    if unit not in TRUNC_UNITS:
        raise ValueError(f"unsupported interval: {unit}")
    if dialect == "clickhouse":
        return {
            "hour": f"toStartOfHour({column})",
            "day": f"toDate({column})",
            "week": f"toStartOfWeek({column}, 1)",
            "month": f"toStartOfMonth({column})",
        }[unit]
    if dialect == "sqlite":
        return {
            "hour": f"strftime('%Y-%m-%d %H:00:00', {column})",
            "day": f"date({column})",
            "week": f"date({column}, 'weekday 0', '-6 days')",
            "month": f"strftime('%Y-%m-01', {column})",
        }[unit]
    if dialect == "mysql":
        return {
            "hour": f"DATE_FORMAT({column}, '%Y-%m-%d %H:00:00')",
            "day": f"DATE({column})",
            "week": f"DATE_SUB(DATE({column}), INTERVAL WEEKDAY({column}) DAY)",
            "month": f"DATE_FORMAT({column}, '%Y-%m-01')",
        }[unit]
    return f"date_trunc('{unit}', {column})"


def duration_seconds(end_expr: str, start_expr: str, dialect: str) -> str:
    """Seconds between two timestamps."""
    if dialect == "clickhouse":
        return f"dateDiff('second', {start_expr}, {end_expr})"
    if dialect == "sqlite":
        return f"((julianday({end_expr}) - julianday({start_expr})) * 86400.0)"
    if dialect == "mysql":
        return f"TIMESTAMPDIFF(SECOND, {start_expr}, {end_expr})"
    return f"EXTRACT(EPOCH FROM ({end_expr} - {start_expr}))"


def as_float(expr: str, dialect: str) -> str:
    if dialect == "clickhouse":
        return f"toFloat64({expr})"
    if dialect == "sqlite":
        return f"CAST({expr} AS REAL)"
    if dialect == "mysql":
        return f"({expr} * 1.0)"
    return f"CAST({expr} AS DOUBLE PRECISION)"


def count_if(condition: str, dialect: str) -> str:
    if dialect == "clickhouse":
        return f"countIf({condition})"
    if dialect == "postgresql":
        return f"COUNT(*) FILTER (WHERE {condition})"
    return f"SUM(CASE WHEN {condition} THEN 1 ELSE 0 END)"


def count_distinct_if(column: str, condition: str, dialect: str) -> str:
    if dialect == "clickhouse":
        return f"uniqExactIf({column}, {condition})"
    if dialect == "postgresql":
        return f"COUNT(DISTINCT {column}) FILTER (WHERE {condition})"
    return f"COUNT(DISTINCT CASE WHEN {condition} THEN {column} END)"


def _strip_from(expr: str, char: str) -> str:
    return f"CASE WHEN instr({expr}, '{char}') > 0 THEN substr({expr}, 1, instr({expr}, '{char}') - 1) ELSE {expr} END"


def normalize_path(column: str, dialect: str) -> str:
    """Lower-case a URL path and drop any query string or fragment."""
    if dialect == "clickhouse":
        return f"lower(replaceRegexpOne({column}, '[?#].*$', ''))"
    if dialect == "sqlite":
        return f"lower({_strip_from(_strip_from(column, '?'), '#')})"
    if dialect == "mysql":
        return f"lower(REGEXP_REPLACE({column}, '[?#].*$', ''))"
    return f"lower(regexp_replace({column}, '[?#].*$', ''))"
