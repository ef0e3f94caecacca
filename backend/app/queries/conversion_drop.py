"""
Conversion-drop insight queries.

Two populations are compared throughout: sessions that fired the conversion
event inside the window and sessions that did not. Membership is decided in
SQL (an EXISTS / IN subquery per session), never by fetching session ids into
Python.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from app.core import clickhouse, database
from app.core.db import CLICKHOUSE, RELATIONAL, run_query
from app.models.models import EVENT_TYPE
from app.queries import sql_compat
from app.queries.common import as_float, as_int, first_row, percentage, rate_change, safe_ratio

logger = logging.getLogger(__name__)

PAGEVIEW = EVENT_TYPE["pageview"]
CUSTOM_EVENT = EVENT_TYPE["customEvent"]

DISTINCT_BY = ("session_id", "visitor_id")

# Converter/drop share differences inside +/- this many points read as neutral.
CORRELATION_NEUTRAL_BAND = 1.0

SESSION_SEGMENT_FIELDS = ("device", "country", "browser", "os", "region", "city", "language", "screen")
SEGMENT_FIELDS = SESSION_SEGMENT_FIELDS + ("source", "path")


def _window_params(website_id: str, start_date: datetime, end_date: datetime, **extra: Any) -> dict[str, Any]:
    return {"websiteId": website_id, "startDate": start_date, "endDate": end_date, **extra}


def _in_window(alias: str, dialect: str) -> str:
    p = sql_compat.param
    return (
        f"{alias}.website_id = {p('websiteId', dialect, 'uuid')} "
        f"AND {alias}.created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}"
    )


def _sessions_in_range_cte(dialect: str) -> str:
    """
    `sessions_in_range(session_id, converted)`: every session with at least
    one event in the window, flagged 1 when it fired the target event inside
    the window. Both backends derive it from `website_event`, so a session
    created before the window still counts when it is active inside it.
    """
    p = sql_compat.param
    fired_target = sql_compat.count_if(f"event_name = {p('targetEvent', dialect)}", dialect)
    return f"""
        sessions_in_range AS (
          SELECT
            session_id,
            CASE WHEN {fired_target} > 0 THEN 1 ELSE 0 END AS converted
          FROM website_event
          WHERE {_in_window('website_event', dialect)}
          GROUP BY session_id
        )
        """


def _population_totals(execute, dialect: str, params: Mapping[str, Any]) -> tuple[int, int]:
    row = first_row(execute(
        f"""
        WITH {_sessions_in_range_cte(dialect)}
        SELECT
          {sql_compat.count_if('converted = 0', dialect)} AS drop_sessions,
          {sql_compat.count_if('converted = 1', dialect)} AS converter_sessions
        FROM sessions_in_range
        """,
        params,
    ))
    return as_int(row.get("drop_sessions")), as_int(row.get("converter_sessions"))


def _dialect_for(backend: str) -> str:
    return "clickhouse" if backend == CLICKHOUSE else database.dialect_name()


def _executor(backend: str):
    return clickhouse.raw_query if backend == CLICKHOUSE else database.raw_query


def _dispatch(fn, *args, **kwargs):
    """Run `fn(execute, dialect, ...)` on whichever backend is active."""
    return run_query({
        RELATIONAL: lambda: fn(_executor(RELATIONAL), _dialect_for(RELATIONAL), *args, **kwargs),
        CLICKHOUSE: lambda: fn(_executor(CLICKHOUSE), _dialect_for(CLICKHOUSE), *args, **kwargs),
    })


# ---------------------------------------------------------------------------
# Total conversion drop between two periods
# ---------------------------------------------------------------------------

def get_total_conversion_drop(
    website_id: str,
    conversion_event: str,
    current_start: datetime,
    current_end: datetime,
    previous_start: datetime,
    previous_end: datetime,
) -> dict[str, Any]:
    return _dispatch(
        _total_conversion_drop,
        website_id,
        conversion_event,
        current_start,
        current_end,
        previous_start,
        previous_end,
    )


def _conversion_period(execute, dialect, website_id, conversion_event, start_date, end_date):
    p = sql_compat.param
    converted = f"we.event_name = {p('conversionEvent', dialect)}"
    row = first_row(execute(
        f"""
        SELECT
          COUNT(DISTINCT we.session_id) AS unique_visitors,
          {sql_compat.count_distinct_if('we.session_id', converted, dialect)} AS conversions
        FROM website_event we
        WHERE {_in_window('we', dialect)}
        """,
        _window_params(website_id, start_date, end_date, conversionEvent=conversion_event),
    ))
    conversions = as_int(row.get("conversions"))
    visitors = as_int(row.get("unique_visitors"))
    return {
        "conversions": conversions,
        "uniqueVisitors": visitors,
        "conversionRate": round(percentage(conversions, visitors), 4),
    }


def _total_conversion_drop(
    execute, dialect, website_id, conversion_event, current_start, current_end, previous_start, previous_end
):
    current = _conversion_period(execute, dialect, website_id, conversion_event, current_start, current_end)
    previous = _conversion_period(execute, dialect, website_id, conversion_event, previous_start, previous_end)
    return {
        "current": current,
        "previous": previous,
        "change": rate_change(current["conversionRate"], previous["conversionRate"]),
    }


# ---------------------------------------------------------------------------
# Events correlated with non-conversion
# ---------------------------------------------------------------------------

def get_drop_correlated_events(
    website_id: str,
    target_event: str,
    start_date: datetime,
    end_date: datetime,
    compare_with_converters: bool = False,
    limit: int = 20,
) -> dict[str, Any]:
    return _dispatch(
        _drop_correlated_events,
        website_id,
        target_event,
        start_date,
        end_date,
        compare_with_converters,
        limit,
    )


def correlation_direction(delta: float) -> str:
    if delta > CORRELATION_NEUTRAL_BAND:
        return "higher_in_drops"
    if delta < -CORRELATION_NEUTRAL_BAND:
        return "higher_in_converters"
    return "neutral"


def _drop_correlated_events(execute, dialect, website_id, target_event, start_date, end_date,
                            compare_with_converters, limit):
    params = _window_params(website_id, start_date, end_date, targetEvent=target_event)
    drop_total, converter_total = _population_totals(execute, dialect, params)
    if drop_total == 0:
        logger.debug("no non-converting sessions for %s", target_event)
        return {
            "nonConvertingSessions": 0,
            "convertingSessions": converter_total,
            "events": [],
        }

    p = sql_compat.param
    join = "INNER JOIN" if dialect == "clickhouse" else "JOIN"
    rows = execute(
        f"""
        WITH {_sessions_in_range_cte(dialect)}
        SELECT
          we.event_name AS event,
          {sql_compat.count_distinct_if('we.session_id', 'sr.converted = 0', dialect)} AS drop_session_count,
          {sql_compat.count_distinct_if('we.session_id', 'sr.converted = 1', dialect)} AS converter_session_count
        FROM website_event we
        {join} sessions_in_range sr ON sr.session_id = we.session_id
        WHERE {_in_window('we', dialect)}
          AND we.event_type = {CUSTOM_EVENT}
          AND we.event_name != {p('targetEvent', dialect)}
        GROUP BY we.event_name
        """,
        params,
    )

    events = []
    for row in rows:
        drop_count = as_int(row["drop_session_count"])
        if drop_count == 0:
            continue
        item: dict[str, Any] = {
            "event": row["event"],
            "dropSessionCount": drop_count,
            "dropSessionPercent": percentage(drop_count, drop_total),
        }
        if compare_with_converters:
            converter_percent = percentage(as_int(row["converter_session_count"]), converter_total)
            delta = item["dropSessionPercent"] - converter_percent
            item.update({
                "converterSessionPercent": converter_percent,
                "delta": delta,
                "direction": correlation_direction(delta),
            })
        events.append(item)

    events.sort(key=lambda e: (-e["dropSessionPercent"], e["event"]))
    return {
        "nonConvertingSessions": drop_total,
        "convertingSessions": converter_total,
        "events": events[: int(limit)],
    }


# ---------------------------------------------------------------------------
# Last pages seen by non-converting sessions
# ---------------------------------------------------------------------------

def get_drop_correlated_pages(
    website_id: str,
    target_event: str,
    start_date: datetime,
    end_date: datetime,
    last_pages_limit: int = 3,
    limit: int = 20,
) -> dict[str, Any]:
    return _dispatch(
        _drop_correlated_pages,
        website_id,
        target_event,
        start_date,
        end_date,
        last_pages_limit,
        limit,
    )


def _drop_correlated_pages(execute, dialect, website_id, target_event, start_date, end_date,
                           last_pages_limit, limit):
    if int(last_pages_limit) < 1:
        raise ValueError("last_pages_limit must be at least 1")
    params = _window_params(website_id, start_date, end_date, targetEvent=target_event)
    drop_total, _ = _population_totals(execute, dialect, params)
    if drop_total == 0:
        return {"nonConvertingSessions": 0, "pages": []}

    join = "INNER JOIN" if dialect == "clickhouse" else "JOIN"
    rows = execute(
        f"""
        WITH {_sessions_in_range_cte(dialect)},
        ranked AS (
          SELECT
            we.session_id AS session_id,
            we.url_path AS path,
            ROW_NUMBER() OVER (PARTITION BY we.session_id ORDER BY we.created_at DESC) AS position_from_end
          FROM website_event we
          {join} sessions_in_range sr ON sr.session_id = we.session_id
          WHERE {_in_window('we', dialect)}
            AND we.event_type = {PAGEVIEW}
            AND sr.converted = 0
        )
        SELECT
          path,
          COUNT(DISTINCT session_id) AS drop_sessions,
          AVG(position_from_end) AS avg_position_from_end
        FROM ranked
        WHERE position_from_end <= {int(last_pages_limit)}
        GROUP BY path
        ORDER BY drop_sessions DESC, path ASC
        LIMIT {int(limit)}
        """,
        params,
    )
    pages = [
        {
            "path": row["path"],
            "dropSessions": as_int(row["drop_sessions"]),
            "percentageOfDropSessions": round(percentage(as_int(row["drop_sessions"]), drop_total), 2),
            "avgPositionFromEnd": round(as_float(row["avg_position_from_end"]), 2),
        }
        for row in rows
    ]
    return {"nonConvertingSessions": drop_total, "pages": pages}


# ---------------------------------------------------------------------------
# Step-by-step drop chain
# ---------------------------------------------------------------------------

def build_drop_chain(steps: Sequence[str], counts: Mapping[str, int]) -> list[dict[str, Any]]:
    """
    Per-step users with the drop to the following step.

    Counts are independent per step; a step may report more users than the
    one before it, which yields a negative drop.
    """
    chain = []
    for index, step in enumerate(steps):
        users = as_int(counts.get(step))
        if index + 1 < len(steps):
            drop_to_next: Optional[int] = users - as_int(counts.get(steps[index + 1]))
            drop_rate: Optional[float] = percentage(drop_to_next, users)
        else:
            drop_to_next = None
            drop_rate = None
        chain.append({"step": step, "users": users, "dropToNext": drop_to_next, "dropRate": drop_rate})
    return chain


def get_event_drop_chain(
    website_id: str,
    steps: Sequence[str],
    start_date: datetime,
    end_date: datetime,
    distinct_by: str = "session_id",
) -> list[dict[str, Any]]:
    steps = [str(step).strip() for step in steps if str(step).strip()]
    if not steps:
        raise ValueError("steps must contain at least one event name")
    if distinct_by not in DISTINCT_BY:
        raise ValueError(f"distinct_by must be one of {', '.join(DISTINCT_BY)}")
    return _dispatch(_event_drop_chain, website_id, steps, start_date, end_date, distinct_by)


def _event_drop_chain(execute, dialect, website_id, steps, start_date, end_date, distinct_by):
    join = ""
    actor = "we.session_id"
    if distinct_by == "visitor_id":
        if dialect == "clickhouse":
            actor = "we.distinct_id"
        else:
            actor = "s.distinct_id"
            join = "JOIN session s ON s.session_id = we.session_id AND s.website_id = we.website_id"
    if dialect == "clickhouse":
        step_filter = "has({steps:Array(String)}, we.event_name)"
    else:
        step_filter = f"we.event_name IN {sql_compat.param('steps', dialect)}"

    rows = execute(
        f"""
        SELECT we.event_name AS step, COUNT(DISTINCT {actor}) AS users
        FROM website_event we
        {join}
        WHERE {_in_window('we', dialect)}
          AND {step_filter}
        GROUP BY we.event_name
        """,
        _window_params(website_id, start_date, end_date, steps=list(dict.fromkeys(steps))),
    )
    counts = {row["step"]: as_int(row["users"]) for row in rows}
    return build_drop_chain(steps, counts)


# ---------------------------------------------------------------------------
# Segment comparison between two periods
# ---------------------------------------------------------------------------

def _segment_expression(field: str, dialect: str) -> tuple[str, bool]:
    """SQL label for a segment field and whether it reads the session table."""
    if field == "source":
        return "COALESCE(NULLIF(we.referrer_domain, ''), 'direct')", False
    if field == "path":
        return "we.url_path", False
    if field in SESSION_SEGMENT_FIELDS:
        if dialect == "clickhouse":
            return f"COALESCE(NULLIF(we.{field}, ''), 'Unknown')", False
        return f"COALESCE(NULLIF(s.{field}, ''), 'Unknown')", True
    raise ValueError(f"unsupported segment field: {field}")


def _segment_rates(execute, dialect, website_id, conversion_event, fields, start_date, end_date):
    p = sql_compat.param
    expressions = []
    needs_join = False
    for index, field in enumerate(fields):
        expression, join = _segment_expression(field, dialect)
        needs_join = needs_join or join
        expressions.append(f"{expression} AS f{index}")
    labels = ", ".join(f"f{index}" for index in range(len(fields)))
    join = "JOIN session s ON s.session_id = we.session_id AND s.website_id = we.website_id" if needs_join else ""
    pageviews_only = f"AND we.event_type = {PAGEVIEW}" if "path" in fields else ""

    rows = execute(
        f"""
        SELECT
          {labels},
          COUNT(DISTINCT session_id) AS unique_visitors,
          {sql_compat.count_distinct_if('session_id', 'converted = 1', dialect)} AS conversions
        FROM (
          SELECT
            we.session_id AS session_id,
            {', '.join(expressions)},
            CASE WHEN we.session_id IN (
              SELECT c.session_id
              FROM website_event c
              WHERE {_in_window('c', dialect)}
                AND c.event_name = {p('conversionEvent', dialect)}
            ) THEN 1 ELSE 0 END AS converted
          FROM website_event we
          {join}
          WHERE {_in_window('we', dialect)}
            {pageviews_only}
        ) segmented
        GROUP BY {labels}
        """,
        _window_params(website_id, start_date, end_date, conversionEvent=conversion_event),
    )
    rates = {}
    for row in rows:
        key = tuple(str(row[f"f{index}"]) for index in range(len(fields)))
        rates[key] = (as_int(row["unique_visitors"]), as_int(row["conversions"]))
    return rates


def _period_stats(visitors: int, conversions: int) -> dict[str, Any]:
    return {
        "conversions": conversions,
        "uniqueVisitors": visitors,
        "conversionRate": safe_ratio(conversions, visitors),
    }


def compare_segment_periods(
    current: Mapping[tuple, tuple[int, int]],
    previous: Mapping[tuple, tuple[int, int]],
    min_visitors: int = 0,
) -> list[tuple[tuple, dict[str, Any]]]:
    """
    Join two `{labels: (visitors, conversions)}` maps on labels present in both
    periods, sorted by absolute rate change.
    """
    compared = []
    for key in current.keys() & previous.keys():
        cur_visitors, cur_conversions = current[key]
        prev_visitors, prev_conversions = previous[key]
        if cur_visitors < min_visitors or prev_visitors < min_visitors:
            continue
        cur = _period_stats(cur_visitors, cur_conversions)
        prev = _period_stats(prev_visitors, prev_conversions)
        compared.append((key, {
            "current": cur,
            "previous": prev,
            "change": rate_change(cur["conversionRate"], prev["conversionRate"]),
        }))
    compared.sort(key=lambda item: (-abs(item[1]["change"]["rateDelta"]), item[0]))
    return compared


def compare_by_segment_shift(
    website_id: str,
    conversion_event: str,
    segment_fields: Iterable[str],
    current_start: datetime,
    current_end: datetime,
    previous_start: datetime,
    previous_end: datetime,
    min_visitors: int = 5,
) -> list[dict[str, Any]]:
    fields = list(dict.fromkeys(str(f).strip() for f in segment_fields if str(f).strip()))
    if not fields:
        raise ValueError("segment_fields must contain at least one field")
    for field in fields:
        if field not in SEGMENT_FIELDS:
            raise ValueError(f"unsupported segment field: {field}")

    def _run(execute, dialect):
        current = _segment_rates(execute, dialect, website_id, conversion_event, fields, current_start, current_end)
        previous = _segment_rates(execute, dialect, website_id, conversion_event, fields, previous_start, previous_end)
        return compare_segment_periods(current, previous, min_visitors)

    compared = _dispatch(_run)
    return [{"segment": dict(zip(fields, key)), **stats} for key, stats in compared]


def compare_by_segment(
    website_id: str,
    conversion_event: str,
    segment: str,
    current_start: datetime,
    current_end: datetime,
    previous_start: datetime,
    previous_end: datetime,
    min_visitors: int = 5,
) -> list[dict[str, Any]]:
    """Single-field comparison: rows are keyed by the field name (`device`, `country`, ...)."""
    rows = compare_by_segment_shift(
        website_id,
        conversion_event,
        [segment],
        current_start,
        current_end,
        previous_start,
        previous_end,
        min_visitors,
    )
    return [
        {segment: row["segment"][segment], "current": row["current"], "previous": row["previous"], "change": row["change"]}
        for row in rows
    ]
