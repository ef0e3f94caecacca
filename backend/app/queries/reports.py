"""
Website listing, headline traffic statistics and the standard traffic
reports: bounce rate, session length, page views and path/country tables.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from app.core import clickhouse, database
from app.core.db import CLICKHOUSE, RELATIONAL, run_query
from app.models.models import EVENT_TYPE, Website
from app.queries import sql_compat
from app.queries.common import as_float, as_int, first_row, iso, normalize_bucket, percentage, round2, safe_ratio
from app.queries.filters import LIKE_ESCAPE, SESSION_JOIN, QueryFilters, escape_like, parse_filters

logger = logging.getLogger(__name__)

PAGEVIEW = EVENT_TYPE["pageview"]


def get_websites() -> list[dict[str, Any]]:
    """Non-deleted websites, newest first."""
    # Website metadata is kept in the relational store whichever backend holds events.
    return run_query({
        RELATIONAL: _websites,
        CLICKHOUSE: _websites,
    })


def _websites() -> list[dict[str, Any]]:
    db = database.SessionLocal()
    try:
        websites = (
            db.query(Website)
            .filter(Website.deleted_at.is_(None))
            .order_by(Website.created_at.desc(), Website.name.asc())
            .all()
        )
        return [
            {
                "id": str(website.website_id),
                "name": website.name,
                "domain": website.domain or "No domain",
                "createdAt": iso(website.created_at) if website.created_at else None,
            }
            for website in websites
        ]
    finally:
        db.close()


def _pageview_filters(filters: QueryFilters | dict) -> dict[str, Any]:
    if isinstance(filters, QueryFilters):
        filters = filters.model_dump()
    return {**filters, "event_type": filters.get("event_type") or PAGEVIEW}


def get_web_statistics(website_id: str, filters: QueryFilters | dict) -> dict[str, Any]:
    """
    Visitors, visits, pageviews, bounces and time on site for the filtered
    pageviews of a website. Event type defaults to pageview.
    """
    filters = _pageview_filters(filters)
    return run_query({
        RELATIONAL: lambda: _web_statistics(database.raw_query, database.dialect_name(), website_id, filters),
        CLICKHOUSE: lambda: _web_statistics(clickhouse.raw_query, "clickhouse", website_id, filters),
    })


def _web_statistics(execute, dialect, website_id, filters):
    parsed = parse_filters(website_id, filters, dialect)
    duration = sql_compat.duration_seconds("MAX(we.created_at)", "MIN(we.created_at)", dialect)
    row = first_row(execute(
        f"""
        WITH session_stats AS (
          SELECT
            we.session_id AS session_id,
            COUNT(*) AS views_count,
            {duration} AS session_duration
          FROM website_event we
          {parsed.joins}
          WHERE {parsed.where}
          {parsed.cohort}
          GROUP BY we.session_id
        )
        SELECT
          COUNT(*) AS visitors,
          SUM(views_count) AS pageviews,
          {sql_compat.count_if('views_count = 1', dialect)} AS bounces,
          SUM(session_duration) AS total_time,
          AVG(session_duration) AS avg_session_duration,
          (
            SELECT COUNT(DISTINCT we.visit_id)
            FROM website_event we
            {parsed.joins}
            WHERE {parsed.where}
            {parsed.cohort}
          ) AS visits
        FROM session_stats
        """,
        parsed.params,
    ))
    stats = {
        "pageviews": as_int(row.get("pageviews")),
        "visitors": as_int(row.get("visitors")),
        "visits": as_int(row.get("visits")),
        "bounces": as_int(row.get("bounces")),
        "totaltime": round(as_float(row.get("total_time"))),
        "avgSessionDurationSeconds": round(as_float(row.get("avg_session_duration")), 2),
    }
    logger.debug("web statistics for %s: %s", website_id, stats)
    return stats


# ---------------------------------------------------------------------------
# Bucketed traffic reports
# ---------------------------------------------------------------------------

GRANULARITIES = ("day", "week", "month")


def _dispatch(fn, *args):
    return run_query({
        RELATIONAL: lambda: fn(database.raw_query, database.dialect_name(), *args),
        CLICKHOUSE: lambda: fn(clickhouse.raw_query, "clickhouse", *args),
    })


def _check_granularity(granularity: str) -> None:
    if granularity not in GRANULARITIES:
        raise ValueError(f"unsupported granularity: {granularity}")


def _pageviews_in_window(dialect: str, alias: str = "") -> str:
    p = sql_compat.param
    prefix = f"{alias}." if alias else ""
    return (
        f"{prefix}website_id = {p('websiteId', dialect, 'uuid')} "
        f"AND {prefix}created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')} "
        f"AND {prefix}event_type = {PAGEVIEW}"
    )


def _window_params(website_id: str, start_date: datetime, end_date: datetime, **extra: Any) -> dict[str, Any]:
    return {"websiteId": website_id, "startDate": start_date, "endDate": end_date, **extra}


def get_bounce_rate(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    granularity: str = "day",
) -> list[dict[str, Any]]:
    """
    Visits and single-page visits per bucket. A visit lands in the bucket of
    its first pageview.
    """
    _check_granularity(granularity)
    return _dispatch(_bounce_rate, website_id, start_date, end_date, granularity)


def _bounce_rate(execute, dialect, website_id, start_date, end_date, granularity):
    bucket = sql_compat.date_trunc("first_at", granularity, dialect)
    rows = execute(
        f"""
        WITH visit_pages AS (
          SELECT visit_id, MIN(created_at) AS first_at, COUNT(*) AS page_count
          FROM website_event
          WHERE {_pageviews_in_window(dialect)}
          GROUP BY visit_id
        )
        SELECT
          {bucket} AS bucket_start,
          COUNT(*) AS visits,
          {sql_compat.count_if('page_count = 1', dialect)} AS bounces
        FROM visit_pages
        GROUP BY bucket_start
        ORDER BY bucket_start
        """,
        _window_params(website_id, start_date, end_date),
    )
    return [
        {
            "bucket_start": normalize_bucket(row["bucket_start"]),
            "visits": as_int(row["visits"]),
            "bounces": as_int(row["bounces"]),
            "bounce_rate": round2(percentage(as_int(row["bounces"]), as_int(row["visits"]))),
        }
        for row in rows
    ]


def get_average_session_length(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    granularity: str = "day",
    include_bounces: bool = True,
) -> list[dict[str, Any]]:
    """
    Sessions and their summed first-to-last pageview time per bucket.

    Single-pageview sessions have zero length; `include_bounces=False`
    leaves them out of both the count and the average.
    """
    _check_granularity(granularity)
    return _dispatch(_average_session_length, website_id, start_date, end_date, granularity, include_bounces)


def _average_session_length(execute, dialect, website_id, start_date, end_date, granularity, include_bounces):
    bucket = sql_compat.date_trunc("first_at", granularity, dialect)
    duration = sql_compat.duration_seconds("last_at", "first_at", dialect)
    bounce_filter = "" if include_bounces else "WHERE pageviews > 1"
    rows = execute(
        f"""
        WITH session_bounds AS (
          SELECT
            session_id,
            MIN(created_at) AS first_at,
            MAX(created_at) AS last_at,
            COUNT(*) AS pageviews
          FROM website_event
          WHERE {_pageviews_in_window(dialect)}
          GROUP BY session_id
        )
        SELECT
          {bucket} AS bucket_start,
          COUNT(*) AS sessions,
          SUM({duration}) AS total_duration_s
        FROM session_bounds
        {bounce_filter}
        GROUP BY bucket_start
        ORDER BY bucket_start
        """,
        _window_params(website_id, start_date, end_date),
    )
    buckets = []
    for row in rows:
        sessions = as_int(row["sessions"])
        total = round(as_float(row["total_duration_s"]))
        buckets.append({
            "bucket_start": normalize_bucket(row["bucket_start"]),
            "sessions": sessions,
            "total_duration_s": total,
            "avg_duration_s": round2(safe_ratio(total, sessions)),
        })
    return buckets


# ---------------------------------------------------------------------------
# Path and country tables
# ---------------------------------------------------------------------------

def get_path_table(website_id: str, filters: QueryFilters | dict, limit: int = 10) -> list[dict[str, Any]]:
    """Top paths by unique visitors. Event type defaults to pageview."""
    filters = _pageview_filters(filters)
    return _dispatch(_path_table, website_id, filters, int(limit))


def _path_table(execute, dialect, website_id, filters, limit):
    parsed = parse_filters(website_id, filters, dialect)
    rows = execute(
        f"""
        SELECT
          we.url_path AS url_path,
          COUNT(DISTINCT we.session_id) AS visitors,
          COUNT(*) AS views
        FROM website_event we
        {parsed.joins}
        WHERE {parsed.where}
          AND we.url_path IS NOT NULL
        {parsed.cohort}
        GROUP BY we.url_path
        ORDER BY visitors DESC, views DESC, url_path ASC
        LIMIT {limit}
        """,
        parsed.params,
    )
    return [
        {"url_path": row["url_path"], "visitors": as_int(row["visitors"]), "views": as_int(row["views"])}
        for row in rows
    ]


def get_country_table(website_id: str, filters: QueryFilters | dict, limit: int = 10) -> list[dict[str, Any]]:
    """Top countries by unique visitors; sessions without a country are left out."""
    filters = _pageview_filters(filters)
    return _dispatch(_country_table, website_id, filters, int(limit))


def _country_table(execute, dialect, website_id, filters, limit):
    parsed = parse_filters(website_id, filters, dialect)
    if dialect == "clickhouse":
        column, joins = "we.country", parsed.joins
    else:
        column, joins = "s.country", parsed.joins or SESSION_JOIN
    rows = execute(
        f"""
        SELECT
          {column} AS country,
          COUNT(DISTINCT we.session_id) AS visitors,
          COUNT(*) AS views
        FROM website_event we
        {joins}
        WHERE {parsed.where}
          AND {column} IS NOT NULL
          AND {column} != ''
        {parsed.cohort}
        GROUP BY {column}
        ORDER BY visitors DESC, views DESC, country ASC
        LIMIT {limit}
        """,
        parsed.params,
    )
    return [
        {"country": row["country"], "visitors": as_int(row["visitors"]), "views": as_int(row["views"])}
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Page views
# ---------------------------------------------------------------------------

def _path_match(dialect: str, path: Optional[str], params: dict[str, Any]) -> str:
    """Substring match on url_path, with LIKE wildcards taken literally."""
    if not path:
        return ""
    if dialect == "clickhouse":
        params["path"] = path
        return f"AND position(url_path, {sql_compat.param('path', dialect)}) > 0"
    params["path"] = f"%{escape_like(path)}%"
    return f"AND url_path LIKE {sql_compat.param('path', dialect)} ESCAPE '{LIKE_ESCAPE}'"


def get_page_views(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    path: Optional[str] = None,
    limit: int = 50,
) -> dict[str, Any]:
    """Views and unique visitors per path, with totals across all matching pageviews."""
    return _dispatch(_page_views, website_id, start_date, end_date, path, int(limit))


def _page_views(execute, dialect, website_id, start_date, end_date, path, limit):
    params = _window_params(website_id, start_date, end_date)
    where = f"WHERE {_pageviews_in_window(dialect)} {_path_match(dialect, path, params)}"
    totals = first_row(execute(
        f"""
        SELECT COUNT(*) AS total_views, COUNT(DISTINCT session_id) AS unique_visitors
        FROM website_event
        {where}
        """,
        params,
    ))
    rows = execute(
        f"""
        SELECT
          url_path,
          COUNT(*) AS total_views,
          COUNT(DISTINCT session_id) AS unique_visitors
        FROM website_event
        {where}
        GROUP BY url_path
        ORDER BY total_views DESC, url_path ASC
        LIMIT {limit}
        """,
        params,
    )
    return {
        "pages": [
            {
                "url_path": row["url_path"],
                "total_views": as_int(row["total_views"]),
                "unique_visitors": as_int(row["unique_visitors"]),
            }
            for row in rows
        ],
        "totals": {
            "total_views": as_int(totals.get("total_views")),
            "unique_visitors": as_int(totals.get("unique_visitors")),
        },
    }


def get_detailed_page_views(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    path: Optional[str] = None,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """
    Per-path views, visitors and visits, plus the average length of visits
    that touched the path and how many of those visits saw only that page.
    """
    return _dispatch(_detailed_page_views, website_id, start_date, end_date, path, int(limit))


def _detailed_page_views(execute, dialect, website_id, start_date, end_date, path, limit):
    params = _window_params(website_id, start_date, end_date)
    path_filter = _path_match(dialect, path, params)
    rows = execute(
        f"""
        SELECT
          url_path,
          COUNT(*) AS total_views,
          COUNT(DISTINCT session_id) AS unique_visitors,
          COUNT(DISTINCT visit_id) AS total_sessions
        FROM website_event
        WHERE {_pageviews_in_window(dialect)} {path_filter}
        GROUP BY url_path
        ORDER BY total_views DESC, url_path ASC
        LIMIT {limit}
        """,
        params,
    )
    if not rows:
        return []

    duration = sql_compat.duration_seconds("MAX(created_at)", "MIN(created_at)", dialect)
    visit_rows = execute(
        f"""
        WITH visit_stats AS (
          SELECT visit_id, COUNT(*) AS page_count, {duration} AS duration_seconds
          FROM website_event
          WHERE {_pageviews_in_window(dialect)}
          GROUP BY visit_id
        ),
        path_visits AS (
          SELECT DISTINCT url_path, visit_id
          FROM website_event
          WHERE {_pageviews_in_window(dialect)} {path_filter}
        )
        SELECT
          pv.url_path AS url_path,
          AVG(vs.duration_seconds) AS avg_duration,
          {sql_compat.count_if('vs.page_count = 1', dialect)} AS bounce_sessions
        FROM path_visits pv
        JOIN visit_stats vs ON vs.visit_id = pv.visit_id
        GROUP BY pv.url_path
        """,
        params,
    )
    by_path = {row["url_path"]: row for row in visit_rows}

    pages = []
    for row in rows:
        visit = by_path.get(row["url_path"], {})
        total_views = as_int(row["total_views"])
        total_sessions = as_int(row["total_sessions"])
        pages.append({
            "url_path": row["url_path"],
            "total_views": total_views,
            "unique_visitors": as_int(row["unique_visitors"]),
            "total_sessions": total_sessions,
            "avg_session_duration_seconds": round2(as_float(visit.get("avg_duration"))),
            "avg_views_per_session": round2(safe_ratio(total_views, total_sessions)),
            "bounce_sessions": as_int(visit.get("bounce_sessions")),
        })
    return pages
