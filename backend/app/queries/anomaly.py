"""
Time-bucketed series feeding the anomaly detectors.

Date windows are whole days: `created_at >= date_from AND created_at < date_to + 1 day`.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Literal

from app.core import clickhouse, database
from app.core.db import CLICKHOUSE, RELATIONAL, run_query
from app.models.models import EVENT_TYPE
from app.queries import sql_compat
from app.queries.common import as_float, as_int, day_start, normalize_bucket, parse_day, safe_ratio

logger = logging.getLogger(__name__)

PAGEVIEW = EVENT_TYPE["pageview"]

TimeseriesMetric = Literal["visits", "pageviews", "bounce_rate", "visit_duration"]
SegmentMetric = Literal["visits", "pageviews", "bounce_rate"]

TIMESERIES_METRICS = ("visits", "pageviews", "bounce_rate", "visit_duration")
TIMESERIES_INTERVALS = ("hour", "day", "week")
RETENTION_PERIODS = ("day", "week", "month")
SEGMENT_METRICS = ("visits", "pageviews", "bounce_rate")

# segment -> (relational column, reads session table, clickhouse column)
SEGMENT_COLUMNS = {
    "country": ("s.country", True, "we.country"),
    "device": ("s.device", True, "we.device"),
    "browser": ("s.browser", True, "we.browser"),
    "referrer_domain": ("we.referrer_domain", False, "we.referrer_domain"),
    "utm_source": ("we.utm_source", False, "we.utm_source"),
    "path": ("we.url_path", False, "we.url_path"),
}


def _day_params(website_id: str, date_from: str, date_to: str) -> dict[str, Any]:
    start = day_start(parse_day(date_from))
    end = day_start(parse_day(date_to)) + timedelta(days=1)
    if end <= start:
        raise ValueError("date_to must not be before date_from")
    return {"websiteId": website_id, "dateFrom": start, "dateTo": end}


def _in_days(dialect: str, alias: str = "") -> str:
    p = sql_compat.param
    prefix = f"{alias}." if alias else ""
    return (
        f"{prefix}website_id = {p('websiteId', dialect, 'uuid')} "
        f"AND {prefix}created_at >= {p('dateFrom', dialect, 'timestamp')} "
        f"AND {prefix}created_at < {p('dateTo', dialect, 'timestamp')}"
    )


def _dispatch(fn, *args):
    return run_query({
        RELATIONAL: lambda: fn(database.raw_query, database.dialect_name(), *args),
        CLICKHOUSE: lambda: fn(clickhouse.raw_query, "clickhouse", *args),
    })


# ---------------------------------------------------------------------------
# Metric timeseries
# ---------------------------------------------------------------------------

def get_timeseries(
    website_id: str,
    metric: TimeseriesMetric,
    date_from: str,
    date_to: str,
    interval: str = "day",
) -> list[dict[str, Any]]:
    """`[{bucket, value}]` ordered by bucket for one traffic metric."""
    if metric not in TIMESERIES_METRICS:
        raise ValueError(f"unsupported metric: {metric}")
    if interval not in TIMESERIES_INTERVALS:
        raise ValueError(f"unsupported interval: {interval}")
    return _dispatch(_timeseries, website_id, metric, date_from, date_to, interval)


def _timeseries_sql(metric: str, interval: str, dialect: str) -> str:
    bucket = sql_compat.date_trunc("created_at", interval, dialect)
    if metric == "visits":
        return f"""
            SELECT {bucket} AS bucket, COUNT(DISTINCT visit_id) AS value
            FROM website_event
            WHERE {_in_days(dialect)}
            GROUP BY bucket
            ORDER BY bucket
        """
    if metric == "pageviews":
        return f"""
            SELECT {bucket} AS bucket, {sql_compat.count_if(f'event_type = {PAGEVIEW}', dialect)} AS value
            FROM website_event
            WHERE {_in_days(dialect)}
            GROUP BY bucket
            ORDER BY bucket
        """
    if metric == "bounce_rate":
        return f"""
            WITH visit_stats AS (
              SELECT
                {bucket} AS bucket,
                visit_id,
                {sql_compat.count_if(f'event_type = {PAGEVIEW}', dialect)} AS views_per_visit
              FROM website_event
              WHERE {_in_days(dialect)}
              GROUP BY bucket, visit_id
            )
            SELECT
              bucket,
              COUNT(DISTINCT visit_id) AS visits,
              {sql_compat.count_if('views_per_visit = 1', dialect)} AS bounces
            FROM visit_stats
            GROUP BY bucket
            ORDER BY bucket
        """
    return f"""
        WITH visit_durations AS (
          SELECT
            {bucket} AS bucket,
            visit_id,
            {sql_compat.duration_seconds('MAX(created_at)', 'MIN(created_at)', dialect)} AS duration_seconds
          FROM website_event
          WHERE {_in_days(dialect)}
          GROUP BY bucket, visit_id
        )
        SELECT bucket, AVG(duration_seconds) AS value
        FROM visit_durations
        GROUP BY bucket
        ORDER BY bucket
    """


def _timeseries(execute, dialect, website_id, metric, date_from, date_to, interval):
    rows = execute(_timeseries_sql(metric, interval, dialect), _day_params(website_id, date_from, date_to))
    points = []
    for row in rows:
        if metric == "bounce_rate":
            value = safe_ratio(as_int(row["bounces"]), as_int(row["visits"]))
        else:
            value = as_float(row["value"])
        points.append({"bucket": normalize_bucket(row["bucket"], interval), "value": value})
    logger.debug("timeseries %s/%s: %d buckets", metric, interval, len(points))
    return points


# ---------------------------------------------------------------------------
# Retention cohorts
# ---------------------------------------------------------------------------

def period_offset(cohort_start: date, active_bucket: date, period: str) -> int:
    """Whole periods between a cohort's start bucket and an activity bucket."""
    if period == "month":
        return (active_bucket.year - cohort_start.year) * 12 + active_bucket.month - cohort_start.month
    days = (active_bucket - cohort_start).days
    return days // 7 if period == "week" else days


def get_retention_cohorts(
    website_id: str,
    period: str,
    date_from: str,
    date_to: str,
    max_k: int = 12,
) -> list[dict[str, Any]]:
    """
    `[{cohort_start, k, active_users}]`: sessions grouped by the period of their
    first event, counted again in each later period they were active in.
    """
    if period not in RETENTION_PERIODS:
        raise ValueError(f"unsupported period: {period}")
    return _dispatch(_retention_cohorts, website_id, period, date_from, date_to, int(max_k))


def _retention_cohorts(execute, dialect, website_id, period, date_from, date_to, max_k):
    bucket = sql_compat.date_trunc("created_at", period, dialect)
    join = "INNER JOIN" if dialect == "clickhouse" else "JOIN"
    rows = execute(
        f"""
        WITH first_seen AS (
          SELECT session_id, MIN({bucket}) AS cohort_start
          FROM website_event
          WHERE {_in_days(dialect)}
          GROUP BY session_id
        ),
        activity AS (
          SELECT DISTINCT session_id, {bucket} AS active_bucket
          FROM website_event
          WHERE {_in_days(dialect)}
        )
        SELECT
          f.cohort_start AS cohort_start,
          a.active_bucket AS active_bucket,
          COUNT(DISTINCT f.session_id) AS active_users
        FROM first_seen f
        {join} activity a ON a.session_id = f.session_id
        WHERE a.active_bucket >= f.cohort_start
        GROUP BY f.cohort_start, a.active_bucket
        ORDER BY cohort_start, active_bucket
        """,
        _day_params(website_id, date_from, date_to),
    )

    counts: dict[tuple[str, int], int] = defaultdict(int)
    for row in rows:
        cohort_label = normalize_bucket(row["cohort_start"], "day")
        k = period_offset(
            date.fromisoformat(cohort_label),
            date.fromisoformat(normalize_bucket(row["active_bucket"], "day")),
            period,
        )
        if 0 <= k <= max_k:
            counts[(cohort_label, k)] += as_int(row["active_users"])
    return [
        {"cohort_start": cohort_start, "k": k, "active_users": users}
        for (cohort_start, k), users in sorted(counts.items())
    ]


# ---------------------------------------------------------------------------
# Segment totals
# ---------------------------------------------------------------------------

def get_segment_totals(
    website_id: str,
    metric: SegmentMetric,
    segment_by: str,
    date_from: str,
    date_to: str,
    normalize_labels: bool = True,
) -> list[dict[str, Any]]:
    """`[{label, value}]` for one metric split by a session or event attribute."""
    if metric not in SEGMENT_METRICS:
        raise ValueError(f"unsupported metric: {metric}")
    if segment_by not in SEGMENT_COLUMNS:
        raise ValueError(f"unsupported segment: {segment_by}")
    return _dispatch(_segment_totals, website_id, metric, segment_by, date_from, date_to, normalize_labels)


def _segment_totals(execute, dialect, website_id, metric, segment_by, date_from, date_to, normalize_labels):
    relational_column, needs_session, clickhouse_column = SEGMENT_COLUMNS[segment_by]
    column = clickhouse_column if dialect == "clickhouse" else relational_column
    label = f"lower({column})" if normalize_labels else column
    join = ""
    if needs_session and dialect != "clickhouse":
        join = "LEFT JOIN session s ON s.session_id = we.session_id AND s.website_id = we.website_id"
    where = f"{_in_days(dialect, 'we')} AND {column} IS NOT NULL AND {column} != ''"
    params = _day_params(website_id, date_from, date_to)

    if metric == "bounce_rate":
        rows = execute(
            f"""
            WITH visit_stats AS (
              SELECT
                {label} AS label,
                we.visit_id AS visit_id,
                {sql_compat.count_if(f'we.event_type = {PAGEVIEW}', dialect)} AS views
              FROM website_event we
              {join}
              WHERE {where}
              GROUP BY label, visit_id
            )
            SELECT
              label,
              COUNT(*) AS visits,
              {sql_compat.count_if('views = 1', dialect)} AS bounces
            FROM visit_stats
            GROUP BY label
            """,
            params,
        )
        totals = [
            {
                "label": row["label"],
                "value": safe_ratio(as_int(row["bounces"]), as_int(row["visits"])),
                "visits": as_int(row["visits"]),
            }
            for row in rows
        ]
        totals.sort(key=lambda item: (-item["visits"], item["label"]))
        return totals

    if metric == "visits":
        value = "COUNT(DISTINCT we.visit_id)"
    else:
        value = "COUNT(*)"
        where += f" AND we.event_type = {PAGEVIEW}"
    rows = execute(
        f"""
        SELECT {label} AS label, {value} AS value
        FROM website_event we
        {join}
        WHERE {where}
        GROUP BY label
        """,
        params,
    )
    totals = [{"label": row["label"], "value": as_int(row["value"])} for row in rows]
    totals.sort(key=lambda item: (-item["value"], item["label"]))
    return totals


# ---------------------------------------------------------------------------
# Path transitions
# ---------------------------------------------------------------------------

def get_path_dropoff_transitions(
    website_id: str,
    date_from: str,
    date_to: str,
    normalize_paths: bool = True,
) -> list[dict[str, Any]]:
    """
    `[{from_path, to_path, transitions}]` between consecutive pageviews of a
    visit; `to_path` is None where the visit ended on `from_path`.
    """
    return _dispatch(_path_transitions, website_id, date_from, date_to, normalize_paths)


def _path_transitions(execute, dialect, website_id, date_from, date_to, normalize_paths):
    path = sql_compat.normalize_path("url_path", dialect) if normalize_paths else "url_path"
    settings_clause = "SETTINGS join_use_nulls = 1" if dialect == "clickhouse" else ""
    rows = execute(
        f"""
        WITH pageviews AS (
          SELECT
            visit_id,
            {path} AS path,
            ROW_NUMBER() OVER (PARTITION BY visit_id ORDER BY created_at) AS rn
          FROM website_event
          WHERE {_in_days(dialect)}
            AND event_type = {PAGEVIEW}
        )
        SELECT
          a.path AS from_path,
          b.path AS to_path,
          COUNT(*) AS transitions
        FROM pageviews a
        LEFT JOIN pageviews b
          ON b.visit_id = a.visit_id AND b.rn = a.rn + 1
        GROUP BY a.path, b.path
        ORDER BY transitions DESC, from_path ASC, to_path ASC
        {settings_clause}
        """,
        _day_params(website_id, date_from, date_to),
    )
    transitions = [
        {
            "from_path": row["from_path"],
            "to_path": row["to_path"] or None,
            "transitions": as_int(row["transitions"]),
        }
        for row in rows
    ]
    # NULL placement in ORDER BY differs between engines; exits sort last.
    transitions.sort(key=lambda t: (-t["transitions"], t["from_path"] or "", t["to_path"] is None, t["to_path"] or ""))
    return transitions
