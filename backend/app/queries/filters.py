"""
Filter parser.

Turns a generic filter description into SQL fragments for one backend:

- `where`: predicates on the event table (aliased `we`), always starting
  with the website and date-range conditions.
- `joins`: JOIN clauses needed to reach session attributes. ClickHouse keeps
  session attributes on `website_event`, so it never needs one.
- `cohort`: an `AND we.session_id IN (...)` subquery restricting to sessions
  whose first qualifying event falls inside the cohort window.
- `params`: every user-supplied value, keyed by placeholder name.

Column names come from fixed whitelists; values only ever travel in `params`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from app.queries.sql_compat import param

SESSION_COLUMNS = {
    "browser": "browser",
    "os": "os",
    "device": "device",
    "screen": "screen",
    "language": "language",
    "country": "country",
    "region": "region",
    "city": "city",
    "distinct_id": "distinct_id",
}

EVENT_COLUMNS = {
    "path": "url_path",
    "url_path": "url_path",
    "query": "url_query",
    "referrer": "referrer_domain",
    "referrer_domain": "referrer_domain",
    "referrer_path": "referrer_path",
    "title": "page_title",
    "page_title": "page_title",
    "utm_source": "utm_source",
    "utm_medium": "utm_medium",
    "utm_campaign": "utm_campaign",
}

OPERATORS = ("eq", "neq", "contains", "not_contains", "in")

SESSION_JOIN = "JOIN session s ON s.session_id = we.session_id AND s.website_id = we.website_id"

# Backslash would itself need escaping inside MySQL string literals.
LIKE_ESCAPE = "!"


def escape_like(value: str) -> str:
    """Make `%`, `_` and the escape character match literally in a LIKE pattern."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


class FilterError(ValueError):
    """Raised for filters that cannot be expressed safely in SQL."""


class DimensionFilter(BaseModel):
    op: str = "eq"
    value: Union[str, int, list[Union[str, int]]]


class CohortFilter(BaseModel):
    """Sessions whose first (optionally: first `event_name`) event falls in [start_date, end_date]."""
    start_date: datetime
    end_date: datetime
    event_name: Optional[str] = None


class QueryFilters(BaseModel):
    start_date: datetime
    end_date: datetime
    event_type: Optional[int] = Field(default=None, ge=1, le=2)
    event_name: Optional[str] = None
    dimensions: dict[str, Union[str, int, list[Union[str, int]], DimensionFilter]] = Field(default_factory=dict)
    cohort: Optional[CohortFilter] = None


@dataclass(frozen=True)
class ParsedFilters:
    where: str
    joins: str
    cohort: str
    params: dict[str, Any] = field(default_factory=dict)


def _column(key: str, dialect: str) -> tuple[str, bool]:
    """Qualified column for a dimension, and whether it needs the session join."""
    if key in EVENT_COLUMNS:
        return f"we.{EVENT_COLUMNS[key]}", False
    if key in SESSION_COLUMNS:
        if dialect == "clickhouse":
            return f"we.{SESSION_COLUMNS[key]}", False
        return f"s.{SESSION_COLUMNS[key]}", True
    raise FilterError(f"unsupported filter dimension: {key}")


def _as_dimension(raw: Any) -> DimensionFilter:
    if isinstance(raw, DimensionFilter):
        return raw
    if isinstance(raw, dict):
        try:
            return DimensionFilter(**raw)
        except ValueError as e:
            raise FilterError(str(e)) from e
    if isinstance(raw, (list, tuple)):
        return DimensionFilter(op="in", value=list(raw))
    return DimensionFilter(op="eq", value=raw)


def _predicate(column: str, name: str, condition: DimensionFilter, dialect: str, params: dict[str, Any]) -> str:
    op = condition.op
    if op not in OPERATORS:
        raise FilterError(f"unsupported filter operator: {op}")
    if op == "in" or isinstance(condition.value, list):
        if op not in ("in", "eq"):
            raise FilterError(f"operator {op} does not accept a list")
        values = [str(v) for v in (condition.value if isinstance(condition.value, list) else [condition.value])]
        if not values:
            raise FilterError(f"empty value list for {column}")
        params[name] = values
        if dialect == "clickhouse":
            return f"has({{{name}:Array(String)}}, {column})"
        return f"{column} IN {param(name, dialect)}"
    if op in ("contains", "not_contains"):
        if dialect == "clickhouse":
            params[name] = str(condition.value)
            comparison = ">" if op == "contains" else "="
            return f"position({column}, {param(name, dialect)}) {comparison} 0"
        params[name] = f"%{escape_like(str(condition.value))}%"
        keyword = "LIKE" if op == "contains" else "NOT LIKE"
        return f"{column} {keyword} {param(name, dialect)} ESCAPE '{LIKE_ESCAPE}'"
    params[name] = str(condition.value)
    operator = "=" if op == "eq" else "!="
    return f"{column} {operator} {param(name, dialect)}"


def parse_filters(website_id: str, filters: QueryFilters | dict, dialect: str) -> ParsedFilters:
    """Build WHERE/JOIN/cohort fragments and the parameter map for `dialect`."""
    if isinstance(filters, dict):
        try:
            filters = QueryFilters(**filters)
        except ValueError as e:
            raise FilterError(str(e)) from e

    params: dict[str, Any] = {
        "websiteId": website_id,
        "startDate": filters.start_date,
        "endDate": filters.end_date,
    }
    clauses = [
        f"we.website_id = {param('websiteId', dialect, 'uuid')}",
        f"we.created_at BETWEEN {param('startDate', dialect, 'timestamp')} AND {param('endDate', dialect, 'timestamp')}",
    ]
    if filters.event_type is not None:
        params["eventType"] = int(filters.event_type)
        clauses.append(f"we.event_type = {param('eventType', dialect, 'smallint')}")
    if filters.event_name:
        params["eventName"] = filters.event_name
        clauses.append(f"we.event_name = {param('eventName', dialect)}")

    needs_session_join = False
    for index, (key, raw) in enumerate(sorted(filters.dimensions.items())):
        column, needs_join = _column(key, dialect)
        needs_session_join = needs_session_join or needs_join
        clauses.append(_predicate(column, f"dim{index}", _as_dimension(raw), dialect, params))

    joins = ""
    if needs_session_join:
        joins = SESSION_JOIN

    cohort = ""
    if filters.cohort is not None:
        params["cohortStartDate"] = filters.cohort.start_date
        params["cohortEndDate"] = filters.cohort.end_date
        cohort_event = ""
        if filters.cohort.event_name:
            params["cohortEventName"] = filters.cohort.event_name
            cohort_event = f" AND c.event_name = {param('cohortEventName', dialect)}"
        cohort = (
            "AND we.session_id IN ("
            "SELECT c.session_id FROM website_event c "
            f"WHERE c.website_id = {param('websiteId', dialect, 'uuid')}{cohort_event} "
            "GROUP BY c.session_id "
            f"HAVING MIN(c.created_at) BETWEEN {param('cohortStartDate', dialect, 'timestamp')} "
            f"AND {param('cohortEndDate', dialect, 'timestamp')})"
        )

    return ParsedFilters(where=" AND ".join(clauses), joins=joins, cohort=cohort, params=params)

