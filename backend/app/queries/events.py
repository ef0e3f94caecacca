"""
Event analytics queries.

Each public function is expressed once and implemented per backend; the
implementation is picked by `run_query`.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import distinct, func

from app.core import clickhouse, database
from app.core.db import CLICKHOUSE, RELATIONAL, run_query
from app.models.models import EVENT_TYPE, WebsiteEvent
from app.queries import sql_compat
from app.queries.common import as_int, first_row, iso, normalize_bucket, percentage, round2
from app.queries.filters import SESSION_JOIN, QueryFilters, parse_filters

logger = logging.getLogger(__name__)

PAGEVIEW = EVENT_TYPE["pageview"]
CUSTOM_EVENT = EVENT_TYPE["customEvent"]


def _period(start_date: datetime, end_date: datetime, date_only: bool = False) -> dict[str, str]:
    if date_only:
        return {"startDate": iso(start_date)[:10], "endDate": iso(end_date)[:10]}
    return {"startDate": iso(start_date), "endDate": iso(end_date)}


# ---------------------------------------------------------------------------
# Average events per session
# ---------------------------------------------------------------------------

def get_average_events_per_session(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: Optional[str] = None,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _average_events_per_session(
            database.raw_query, "relational", website_id, start_date, end_date, event_name
        ),
        CLICKHOUSE: lambda: _average_events_per_session(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, event_name
        ),
    })


def _average_events_per_session(execute, dialect, website_id, start_date, end_date, event_name):
    p = sql_compat.param
    event_filter = f"AND event_name = {p('eventName', dialect)}" if event_name else ""
    where = f"""
        WHERE website_id = {p('websiteId', dialect, 'uuid')}
          AND created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          {event_filter}
    """
    params = {"websiteId": website_id, "startDate": start_date, "endDate": end_date, "eventName": event_name}

    totals = first_row(execute(
        f"""
        SELECT
          COUNT(*) AS total_events,
          COUNT(DISTINCT session_id) AS total_sessions
        FROM website_event
        {where}
        """,
        params,
    ))
    total_events = as_int(totals.get("total_events"))
    total_sessions = as_int(totals.get("total_sessions"))

    rows = execute(
        f"""
        SELECT
          event_count,
          COUNT(*) AS session_count
        FROM (
          SELECT session_id, COUNT(*) AS event_count
          FROM website_event
          {where}
          GROUP BY session_id
        ) session_event_counts
        GROUP BY event_count
        ORDER BY event_count
        """,
        params,
    )
    breakdown = [
        {
            "sessionCount": as_int(row["session_count"]),
            "eventCount": as_int(row["event_count"]),
            "percentage": percentage(as_int(row["session_count"]), total_sessions),
        }
        for row in rows
    ]
    return {
        "averageEventsPerSession": total_events / total_sessions if total_sessions > 0 else 0,
        "totalSessions": total_sessions,
        "totalEvents": total_events,
        "eventName": event_name,
        "breakdown": breakdown,
    }


# ---------------------------------------------------------------------------
# Most frequent custom events
# ---------------------------------------------------------------------------

def get_most_frequent_events(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    limit: int = 10,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _most_frequent_events(
            database.raw_query, "relational", website_id, start_date, end_date, limit
        ),
        CLICKHOUSE: lambda: _most_frequent_events(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, limit
        ),
    })


def _most_frequent_events(execute, dialect, website_id, start_date, end_date, limit):
    p = sql_compat.param
    where = f"""
        WHERE website_id = {p('websiteId', dialect, 'uuid')}
          AND created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          AND event_type = {p('eventType', dialect, 'smallint')}
    """
    params = {
        "websiteId": website_id,
        "startDate": start_date,
        "endDate": end_date,
        "eventType": CUSTOM_EVENT,
    }
    total_events = as_int(first_row(execute(
        f"SELECT COUNT(*) AS total_count FROM website_event {where}", params
    )).get("total_count"))

    rows = execute(
        f"""
        SELECT event_name, COUNT(*) AS event_count
        FROM website_event
        {where}
        GROUP BY event_name
        ORDER BY event_count DESC, event_name ASC
        LIMIT {int(limit)}
        """,
        params,
    )
    events = [
        {
            "eventName": row["event_name"],
            "eventCount": as_int(row["event_count"]),
            "percentage": percentage(as_int(row["event_count"]), total_events),
        }
        for row in rows
    ]
    return {
        "events": events,
        "totalEvents": total_events,
        "period": _period(start_date, end_date, date_only=True),
    }


# ---------------------------------------------------------------------------
# Signup conversion rate (pageviews vs signup events)
# ---------------------------------------------------------------------------

def get_signup_conversion_rate(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    signup_event_name: str = "signup",
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _signup_conversion_relational(website_id, start_date, end_date, signup_event_name),
        CLICKHOUSE: lambda: _signup_conversion_clickhouse(website_id, start_date, end_date, signup_event_name),
    })


def _signup_result(start_date, end_date, total_visits, unique_visitors, total_signups, unique_signups):
    return {
        "totalVisits": total_visits,
        "totalSignups": total_signups,
        "conversionRate": round2(percentage(total_signups, total_visits)),
        "period": _period(start_date, end_date),
        "breakdown": {
            "visits": {"pageviews": total_visits, "uniqueVisitors": unique_visitors},
            "signups": {"total": total_signups, "uniqueUsers": unique_signups},
        },
    }


def _signup_conversion_relational(website_id, start_date, end_date, signup_event_name):
    db = database.SessionLocal()
    try:
        in_range = (
            WebsiteEvent.website_id == website_id,
            WebsiteEvent.created_at >= start_date,
            WebsiteEvent.created_at <= end_date,
        )
        pageviews = (*in_range, WebsiteEvent.event_type == PAGEVIEW)
        signups = (
            *in_range,
            WebsiteEvent.event_type == CUSTOM_EVENT,
            WebsiteEvent.event_name == signup_event_name,
        )
        total_visits, unique_visitors = db.query(
            func.count(WebsiteEvent.event_id),
            func.count(distinct(WebsiteEvent.session_id)),
        ).filter(*pageviews).one()
        total_signups, unique_signups = db.query(
            func.count(WebsiteEvent.event_id),
            func.count(distinct(WebsiteEvent.session_id)),
        ).filter(*signups).one()
    finally:
        db.close()
    return _signup_result(
        start_date,
        end_date,
        as_int(total_visits),
        as_int(unique_visitors),
        as_int(total_signups),
        as_int(unique_signups),
    )


def _signup_conversion_clickhouse(website_id, start_date, end_date, signup_event_name):
    row = first_row(clickhouse.raw_query(
        """
        SELECT
          countIf(event_type = 1) AS total_visits,
          uniqExactIf(session_id, event_type = 1) AS unique_visitors,
          countIf(event_type = 2 AND event_name = {signupEventName:String}) AS total_signups,
          uniqExactIf(session_id, event_type = 2 AND event_name = {signupEventName:String}) AS unique_signups
        FROM website_event
        WHERE website_id = {websiteId:UUID}
          AND created_at BETWEEN {startDate:DateTime64} AND {endDate:DateTime64}
        """,
        {
            "websiteId": website_id,
            "startDate": start_date,
            "endDate": end_date,
            "signupEventName": signup_event_name,
        },
    ))
    return _signup_result(
        start_date,
        end_date,
        as_int(row.get("total_visits")),
        as_int(row.get("unique_visitors")),
        as_int(row.get("total_signups")),
        as_int(row.get("unique_signups")),
    )


# ---------------------------------------------------------------------------
# Event conversion funnel (X then Y within a session)
# ---------------------------------------------------------------------------

def get_event_conversion_funnel(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_x: Optional[str] = None,
    event_y: Optional[str] = None,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _event_conversion_funnel(
            database.raw_query, "relational", website_id, start_date, end_date, event_x, event_y
        ),
        CLICKHOUSE: lambda: _event_conversion_funnel(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, event_x, event_y
        ),
    })


def _event_conversion_funnel(execute, dialect, website_id, start_date, end_date, event_x, event_y):
    """
    Started: sessions with X in range (X defaults to any pageview).
    Converted: those sessions where Y (default: any custom event) happens after X.
    """
    p = sql_compat.param
    x_filter = f"we1.event_name = {p('eventX', dialect)}" if event_x else f"we1.event_type = {PAGEVIEW}"
    y_filter = f"we2.event_name = {p('eventY', dialect)}" if event_y else f"we2.event_type = {CUSTOM_EVENT}"
    params = {
        "websiteId": website_id,
        "startDate": start_date,
        "endDate": end_date,
        "eventX": event_x,
        "eventY": event_y,
    }
    in_range = f"""
        we1.website_id = {p('websiteId', dialect, 'uuid')}
        AND we1.created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
    """
    started = as_int(first_row(execute(
        f"""
        SELECT COUNT(DISTINCT we1.session_id) AS started_sessions
        FROM website_event we1
        WHERE {in_range}
          AND {x_filter}
        """,
        params,
    )).get("started_sessions"))

    if dialect == "clickhouse":
        # ClickHouse joins on equality only; the ordering condition goes in WHERE.
        join = """
        INNER JOIN website_event we2
          ON we2.website_id = we1.website_id
         AND we2.session_id = we1.session_id
        """
        ordering = "AND we2.created_at > we1.created_at"
    else:
        join = """
        JOIN website_event we2
          ON we2.website_id = we1.website_id
         AND we2.session_id = we1.session_id
         AND we2.created_at > we1.created_at
        """
        ordering = ""
    converted = as_int(first_row(execute(
        f"""
        SELECT COUNT(DISTINCT we1.session_id) AS converted_sessions
        FROM website_event we1
        {join}
        WHERE {in_range}
          AND {x_filter}
          AND {y_filter}
          {ordering}
        """,
        params,
    )).get("converted_sessions"))

    return {
        "eventX": event_x,
        "eventY": event_y,
        "startedSessions": started,
        "convertedSessions": converted,
        "conversionRate": percentage(converted, started),
    }


# ---------------------------------------------------------------------------
# Event drop-offs (custom event that is the session's last event)
# ---------------------------------------------------------------------------

def get_event_dropoffs(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: Optional[str] = None,
    limit: int = 10,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _event_dropoffs(
            database.raw_query, database.dialect_name(), website_id, start_date, end_date, event_name, limit
        ),
        CLICKHOUSE: lambda: _event_dropoffs(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, event_name, limit
        ),
    })


def _event_dropoffs(execute, dialect, website_id, start_date, end_date, event_name, limit):
    p = sql_compat.param
    name_filter = f"AND we.event_name = {p('eventName', dialect)}" if event_name else ""
    is_last = "we.created_at = le.last_time"
    join = "INNER JOIN" if dialect == "clickhouse" else "JOIN"
    rows = execute(
        f"""
        WITH last_events AS (
          SELECT session_id, MAX(created_at) AS last_time
          FROM website_event
          WHERE website_id = {p('websiteId', dialect, 'uuid')}
            AND created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          GROUP BY session_id
        )
        SELECT
          we.event_name AS event_name,
          COUNT(DISTINCT we.session_id) AS sessions_with_event,
          {sql_compat.count_distinct_if('we.session_id', is_last, dialect)} AS dropoff_sessions
        FROM website_event we
        {join} last_events le ON le.session_id = we.session_id
        WHERE we.website_id = {p('websiteId', dialect, 'uuid')}
          AND we.created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          AND we.event_type = {CUSTOM_EVENT}
          {name_filter}
        GROUP BY we.event_name
        ORDER BY dropoff_sessions DESC, event_name ASC
        LIMIT {int(limit)}
        """,
        {
            "websiteId": website_id,
            "startDate": start_date,
            "endDate": end_date,
            "eventName": event_name,
        },
    )
    items = []
    for row in rows:
        with_event = as_int(row["sessions_with_event"])
        dropoffs = as_int(row["dropoff_sessions"])
        items.append({
            "eventName": row["event_name"],
            "sessionsWithEvent": with_event,
            "dropoffSessions": dropoffs,
            "dropoffRate": percentage(dropoffs, with_event),
        })
    return {
        "websiteId": website_id,
        "startDate": iso(start_date),
        "endDate": iso(end_date),
        "items": items,
    }


# ---------------------------------------------------------------------------
# Event frequency distribution (events per session)
# ---------------------------------------------------------------------------

def get_event_frequency_distribution(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: Optional[str] = None,
    event_type: Optional[int] = None,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _event_frequency_distribution(
            database.raw_query, "relational", website_id, start_date, end_date, event_name, event_type
        ),
        CLICKHOUSE: lambda: _event_frequency_distribution(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, event_name, event_type
        ),
    })


def _event_frequency_distribution(execute, dialect, website_id, start_date, end_date, event_name, event_type):
    p = sql_compat.param
    type_filter = f"AND event_type = {p('eventType', dialect, 'smallint')}" if event_type is not None else ""
    name_filter = f"AND event_name = {p('eventName', dialect)}" if event_name else ""
    where = f"""
        WHERE website_id = {p('websiteId', dialect, 'uuid')}
          AND created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          {type_filter}
          {name_filter}
    """
    params = {
        "websiteId": website_id,
        "startDate": start_date,
        "endDate": end_date,
        "eventType": event_type,
        "eventName": event_name,
    }
    rows = execute(
        f"""
        SELECT event_count, COUNT(*) AS user_count
        FROM (
          SELECT session_id, COUNT(*) AS event_count
          FROM website_event
          {where}
          GROUP BY session_id
        ) user_event_counts
        GROUP BY event_count
        ORDER BY event_count
        """,
        params,
    )
    total_users = as_int(first_row(execute(
        f"SELECT COUNT(DISTINCT session_id) AS total_users FROM website_event {where}", params
    )).get("total_users"))

    with_one = 0
    with_multiple = 0
    breakdown = []
    for row in rows:
        event_count = as_int(row["event_count"])
        user_count = as_int(row["user_count"])
        breakdown.append({"eventCount": event_count, "userCount": user_count})
        if event_count == 1:
            with_one = user_count
        else:
            with_multiple += user_count
    return {
        "usersWithOneEvent": with_one,
        "usersWithMultipleEvents": with_multiple,
        "totalUniqueUsers": total_users,
        "eventName": event_name,
        "breakdown": breakdown,
    }


# ---------------------------------------------------------------------------
# Event comparison (add-to-cart vs checkout)
# ---------------------------------------------------------------------------

def get_event_comparison(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    add_event_name: str = "add_to_cart",
    checkout_event_name: str = "checkout_success",
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _event_comparison_relational(
            website_id, start_date, end_date, add_event_name, checkout_event_name
        ),
        CLICKHOUSE: lambda: _event_comparison_clickhouse(
            website_id, start_date, end_date, add_event_name, checkout_event_name
        ),
    })


def _comparison_result(start_date, end_date, add_count, checkout_count):
    return {
        "addToCartCount": add_count,
        "checkoutCount": checkout_count,
        "successRate": round2(percentage(checkout_count, add_count)),
        "totalEvents": add_count + checkout_count,
        "period": _period(start_date, end_date),
    }


def _event_comparison_relational(website_id, start_date, end_date, add_event_name, checkout_event_name):
    db = database.SessionLocal()
    try:
        def _count(name: str) -> int:
            return as_int(
                db.query(func.count(WebsiteEvent.event_id))
                .filter(
                    WebsiteEvent.website_id == website_id,
                    WebsiteEvent.event_type == CUSTOM_EVENT,
                    WebsiteEvent.event_name == name,
                    WebsiteEvent.created_at >= start_date,
                    WebsiteEvent.created_at <= end_date,
                )
                .scalar()
            )

        add_count = _count(add_event_name)
        checkout_count = _count(checkout_event_name)
    finally:
        db.close()
    return _comparison_result(start_date, end_date, add_count, checkout_count)


def _event_comparison_clickhouse(website_id, start_date, end_date, add_event_name, checkout_event_name):
    row = first_row(clickhouse.raw_query(
        """
        SELECT
          countIf(event_name = {addEventName:String}) AS add_count,
          countIf(event_name = {checkoutEventName:String}) AS checkout_count
        FROM website_event
        WHERE website_id = {websiteId:UUID}
          AND event_type = 2
          AND created_at BETWEEN {startDate:DateTime64} AND {endDate:DateTime64}
        """,
        {
            "websiteId": website_id,
            "startDate": start_date,
            "endDate": end_date,
            "addEventName": add_event_name,
            "checkoutEventName": checkout_event_name,
        },
    ))
    return _comparison_result(
        start_date, end_date, as_int(row.get("add_count")), as_int(row.get("checkout_count"))
    )


# ---------------------------------------------------------------------------
# Unique users clicking a button (custom event)
# ---------------------------------------------------------------------------

def get_unique_button_click_users(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: str,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _unique_button_click_users(
            database.raw_query, "relational", website_id, start_date, end_date, event_name
        ),
        CLICKHOUSE: lambda: _unique_button_click_users(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, event_name
        ),
    })


def _unique_button_click_users(execute, dialect, website_id, start_date, end_date, event_name):
    p = sql_compat.param
    row = first_row(execute(
        f"""
        SELECT
          COUNT(DISTINCT session_id) AS unique_users,
          COUNT(*) AS total_clicks
        FROM website_event
        WHERE website_id = {p('websiteId', dialect, 'uuid')}
          AND created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          AND event_type = {p('eventType', dialect, 'smallint')}
          AND event_name = {p('eventName', dialect)}
        """,
        {
            "websiteId": website_id,
            "startDate": start_date,
            "endDate": end_date,
            "eventType": CUSTOM_EVENT,
            "eventName": event_name,
        },
    ))
    return {
        "uniqueUsers": as_int(row.get("unique_users")),
        "totalClicks": as_int(row.get("total_clicks")),
        "eventName": event_name,
        "period": _period(start_date, end_date, date_only=True),
    }


# ---------------------------------------------------------------------------
# New-user first-day event rate
# ---------------------------------------------------------------------------

def get_new_user_first_day_event_rate(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: Optional[str] = None,
) -> dict[str, Any]:
    return run_query({
        RELATIONAL: lambda: _new_user_first_day_event_rate(
            database.raw_query, database.dialect_name(), website_id, start_date, end_date, event_name
        ),
        CLICKHOUSE: lambda: _new_user_first_day_event_rate(
            clickhouse.raw_query, "clickhouse", website_id, start_date, end_date, event_name
        ),
    })


def _new_user_first_day_event_rate(execute, dialect, website_id, start_date, end_date, event_name):
    p = sql_compat.param
    firsts = f"""
        firsts AS (
          SELECT session_id, MIN(created_at) AS first_time
          FROM website_event
          WHERE website_id = {p('websiteId', dialect, 'uuid')}
            AND created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')}
          GROUP BY session_id
        )
    """
    params = {"websiteId": website_id, "startDate": start_date, "endDate": end_date, "eventName": event_name}
    total = as_int(first_row(execute(
        f"WITH {firsts} SELECT COUNT(*) AS total_sessions FROM firsts", params
    )).get("total_sessions"))

    event_filter = f"we.event_name = {p('eventName', dialect)}" if event_name else f"we.event_type = {CUSTOM_EVENT}"
    same_day = (
        f"{sql_compat.date_trunc('we.created_at', 'day', dialect)} = "
        f"{sql_compat.date_trunc('f.first_time', 'day', dialect)}"
    )
    join = "INNER JOIN" if dialect == "clickhouse" else "JOIN"
    with_event = as_int(first_row(execute(
        f"""
        WITH {firsts}
        SELECT COUNT(DISTINCT we.session_id) AS sessions_with_event
        FROM website_event we
        {join} firsts f ON f.session_id = we.session_id
        WHERE we.website_id = {p('websiteId', dialect, 'uuid')}
          AND {same_day}
          AND {event_filter}
        """,
        params,
    )).get("sessions_with_event"))

    return {
        "totalSessions": total,
        "sessionsWithEventOnFirstDay": with_event,
        "percentage": percentage(with_event, total),
        "eventName": event_name,
    }


# ---------------------------------------------------------------------------
# Filtered event counts
# ---------------------------------------------------------------------------

def get_filtered_event_counts(website_id: str, filters: QueryFilters | dict, limit: int = 50) -> dict[str, Any]:
    """Event counts by name under date, type, dimension and cohort filters."""
    return run_query({
        RELATIONAL: lambda: _filtered_event_counts(
            database.raw_query, database.dialect_name(), website_id, filters, limit
        ),
        CLICKHOUSE: lambda: _filtered_event_counts(
            clickhouse.raw_query, "clickhouse", website_id, filters, limit
        ),
    })


def _filtered_event_counts(execute, dialect, website_id, filters, limit):
    parsed = parse_filters(website_id, filters, dialect)
    params = parsed.params
    rows = execute(
        f"""
        SELECT
          we.event_type AS event_type,
          we.event_name AS event_name,
          COUNT(*) AS event_count,
          COUNT(DISTINCT we.session_id) AS session_count
        FROM website_event we
        {parsed.joins}
        WHERE {parsed.where}
        {parsed.cohort}
        GROUP BY we.event_type, we.event_name
        ORDER BY event_count DESC, event_name ASC
        LIMIT {int(limit)}
        """,
        params,
    )
    events = [
        {
            "eventType": as_int(row["event_type"]),
            "eventName": row["event_name"] or None,
            "eventCount": as_int(row["event_count"]),
            "sessionCount": as_int(row["session_count"]),
        }
        for row in rows
    ]
    logger.debug("filtered event counts: %d groups", len(events))
    return {
        "events": events,
        "totalEvents": sum(item["eventCount"] for item in events),
    }


# ---------------------------------------------------------------------------
# Custom event totals, trends and segments
# ---------------------------------------------------------------------------

GRANULARITIES = ("day", "week", "month")

# segment -> (relational column, clickhouse column)
EVENT_SEGMENTS = {
    "country": ("s.country", "we.country"),
    "device": ("s.device", "we.device"),
    "browser": ("s.browser", "we.browser"),
}


def _dispatch(fn, *args):
    return run_query({
        RELATIONAL: lambda: fn(database.raw_query, database.dialect_name(), *args),
        CLICKHOUSE: lambda: fn(clickhouse.raw_query, "clickhouse", *args),
    })


def _custom_events_where(dialect: str, event_name: Optional[str]) -> str:
    p = sql_compat.param
    where = (
        f"we.website_id = {p('websiteId', dialect, 'uuid')} "
        f"AND we.created_at BETWEEN {p('startDate', dialect, 'timestamp')} AND {p('endDate', dialect, 'timestamp')} "
        f"AND we.event_type = {p('eventType', dialect, 'smallint')}"
    )
    if event_name:
        where += f" AND we.event_name = {p('eventName', dialect)}"
    return where


def _custom_event_params(website_id, start_date, end_date, event_name) -> dict[str, Any]:
    return {
        "websiteId": website_id,
        "startDate": start_date,
        "endDate": end_date,
        "eventType": CUSTOM_EVENT,
        "eventName": event_name,
    }


def _session_join(dialect: str) -> str:
    if dialect == "clickhouse":
        return ""
    return SESSION_JOIN


def get_total_event_count(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: Optional[str] = None,
) -> int:
    """Number of custom events, optionally of one name."""
    return _dispatch(_custom_event_totals, website_id, start_date, end_date, event_name)["total_events"]


def get_unique_users(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    event_name: Optional[str] = None,
) -> int:
    """Number of sessions that fired a custom event, optionally of one name."""
    return _dispatch(_custom_event_totals, website_id, start_date, end_date, event_name)["unique_users"]


def _custom_event_totals(execute, dialect, website_id, start_date, end_date, event_name):
    row = first_row(execute(
        f"""
        SELECT COUNT(*) AS total_events, COUNT(DISTINCT we.session_id) AS unique_users
        FROM website_event we
        WHERE {_custom_events_where(dialect, event_name)}
        """,
        _custom_event_params(website_id, start_date, end_date, event_name),
    ))
    return {
        "total_events": as_int(row.get("total_events")),
        "unique_users": as_int(row.get("unique_users")),
    }


def get_events_per_period(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    granularity: str = "day",
    event_name: Optional[str] = None,
) -> list[dict[str, Any]]:
    """`[{period, events_count, unique_users}]` for custom events, oldest period first."""
    if granularity not in GRANULARITIES:
        raise ValueError(f"unsupported granularity: {granularity}")
    return _dispatch(_events_per_period, website_id, start_date, end_date, granularity, event_name)


def _events_per_period(execute, dialect, website_id, start_date, end_date, granularity, event_name):
    period = sql_compat.date_trunc("we.created_at", granularity, dialect)
    rows = execute(
        f"""
        SELECT
          {period} AS period,
          COUNT(*) AS events_count,
          COUNT(DISTINCT we.session_id) AS unique_users
        FROM website_event we
        WHERE {_custom_events_where(dialect, event_name)}
        GROUP BY period
        ORDER BY period
        """,
        _custom_event_params(website_id, start_date, end_date, event_name),
    )
    return [
        {
            "period": normalize_bucket(row["period"]),
            "events_count": as_int(row["events_count"]),
            "unique_users": as_int(row["unique_users"]),
        }
        for row in rows
    ]


def get_returning_event_users(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    granularity: str = "day",
    event_name: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Identified users (sessions with a distinct_id) firing custom events per
    period, and how many of them were already seen in an earlier period.
    """
    if granularity not in GRANULARITIES:
        raise ValueError(f"unsupported granularity: {granularity}")
    return _dispatch(_returning_event_users, website_id, start_date, end_date, granularity, event_name)


def _returning_event_users(execute, dialect, website_id, start_date, end_date, granularity, event_name):
    period = sql_compat.date_trunc("we.created_at", granularity, dialect)
    user = "we.distinct_id" if dialect == "clickhouse" else "s.distinct_id"
    rows = execute(
        f"""
        SELECT DISTINCT
          {user} AS user_id,
          {period} AS period
        FROM website_event we
        {_session_join(dialect)}
        WHERE {_custom_events_where(dialect, event_name)}
          AND {user} IS NOT NULL
          AND {user} != ''
        """,
        _custom_event_params(website_id, start_date, end_date, event_name),
    )
    return returning_users_by_period((normalize_bucket(row["period"]), row["user_id"]) for row in rows)


def returning_users_by_period(pairs) -> list[dict[str, Any]]:
    """Fold `(period, user_id)` pairs into per-period totals and returning counts."""
    users_by_period: dict[str, set] = {}
    for period, user_id in pairs:
        users_by_period.setdefault(period, set()).add(user_id)

    seen: set = set()
    result = []
    for period in sorted(users_by_period):
        users = users_by_period[period]
        returning = len(users & seen)
        result.append({
            "period": period,
            "total_users": len(users),
            "returning_users": returning,
            "returning_rate": round2(percentage(returning, len(users))),
        })
        seen |= users
    return result


def get_segmented_events(
    website_id: str,
    start_date: datetime,
    end_date: datetime,
    segment_by: str = "device",
    event_name: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Custom events and distinct sessions per country, device or browser."""
    if segment_by not in EVENT_SEGMENTS:
        raise ValueError(f"unsupported segment: {segment_by}")
    return _dispatch(_segmented_events, website_id, start_date, end_date, segment_by, event_name)


def _segmented_events(execute, dialect, website_id, start_date, end_date, segment_by, event_name):
    relational_column, clickhouse_column = EVENT_SEGMENTS[segment_by]
    column = clickhouse_column if dialect == "clickhouse" else relational_column
    rows = execute(
        f"""
        SELECT
          {column} AS segment_value,
          COUNT(*) AS events_count,
          COUNT(DISTINCT we.session_id) AS unique_users
        FROM website_event we
        {_session_join(dialect)}
        WHERE {_custom_events_where(dialect, event_name)}
        GROUP BY {column}
        """,
        _custom_event_params(website_id, start_date, end_date, event_name),
    )
    # NULL and '' both mean the attribute was never recorded.
    merged: dict[str, dict[str, int]] = {}
    for row in rows:
        label = row["segment_value"] or "Unknown"
        bucket = merged.setdefault(label, {"events_count": 0, "unique_users": 0})
        bucket["events_count"] += as_int(row["events_count"])
        bucket["unique_users"] += as_int(row["unique_users"])
    segments = [
        {"segment_type": segment_by, "segment_value": label, **counts}
        for label, counts in merged.items()
    ]
    segments.sort(key=lambda item: (-item["events_count"], item["segment_value"]))
    return segments
