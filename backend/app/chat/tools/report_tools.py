"""Chat tools for the standard traffic reports."""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Literal, Optional, Union

from pydantic import Field

from app.chat.tools.base import ChatTool, RecentWindowInput
from app.core.time import today_utc
from app.queries import anomaly, reports
from app.queries.common import iso, percentage, round2, safe_ratio

Granularity = Literal["day", "week", "month"]


def _window_fields(start, end) -> dict[str, str]:
    return {"start_date": iso(start)[:10], "end_date": iso(end)[:10]}


class BucketedInput(RecentWindowInput):
    granularity: Granularity = "day"


def _bounce_rate(params: BucketedInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    buckets = reports.get_bounce_rate(website_id, start, end, params.granularity)
    visits = sum(b["visits"] for b in buckets)
    bounces = sum(b["bounces"] for b in buckets)
    return {
        **_window_fields(start, end),
        "granularity": params.granularity,
        "summary": {
            "visits": visits,
            "bounces": bounces,
            "bounce_rate": round2(percentage(bounces, visits)),
        },
        "series": buckets,
    }


class SessionLengthInput(BucketedInput):
    include_bounces: bool = Field(default=True, description="Count single-pageview sessions (length 0)")


def _average_session_length(params: SessionLengthInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    buckets = reports.get_average_session_length(
        website_id, start, end, params.granularity, params.include_bounces
    )
    sessions = sum(b["sessions"] for b in buckets)
    total = sum(b["total_duration_s"] for b in buckets)
    return {
        **_window_fields(start, end),
        "granularity": params.granularity,
        "include_bounces": params.include_bounces,
        "summary": {
            "sessions": sessions,
            "total_duration_s": total,
            "avg_duration_s": round2(safe_ratio(total, sessions)),
        },
        "series": buckets,
    }


class PageViewsInput(RecentWindowInput):
    path: Optional[str] = Field(default=None, description="Only paths containing this text")
    limit: int = Field(default=50, ge=1, le=500)


def _page_views(params: PageViewsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    result = reports.get_page_views(website_id, start, end, params.path, params.limit)
    return {**_window_fields(start, end), "path": params.path, **result}


class DetailedPageViewsInput(PageViewsInput):
    limit: int = Field(default=20, ge=1, le=200)


def _detailed_page_views(params: DetailedPageViewsInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    pages = reports.get_detailed_page_views(website_id, start, end, params.path, params.limit)
    return {**_window_fields(start, end), "path": params.path, "pages": pages}


class TableInput(RecentWindowInput):
    limit: int = Field(default=10, ge=1, le=100)
    filters: dict[str, Union[str, list[str]]] = Field(
        default_factory=dict,
        description='Dimension filters, e.g. {"device": "mobile"}',
    )


def _table_filters(params: TableInput, start, end) -> dict[str, Any]:
    return {"start_date": start, "end_date": end, "dimensions": params.filters}


def _path_table(params: TableInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    rows = reports.get_path_table(website_id, _table_filters(params, start, end), params.limit)
    return {**_window_fields(start, end), "rows": rows}


def _country_table(params: TableInput, website_id: str) -> dict[str, Any]:
    start, end = params.window()
    rows = reports.get_country_table(website_id, _table_filters(params, start, end), params.limit)
    return {**_window_fields(start, end), "rows": rows}


class RetentionInput(RecentWindowInput):
    days: int = Field(default=30, ge=1, le=365, description="Number of daily cohorts to report")


def _retention(params: RetentionInput, website_id: str) -> dict[str, Any]:
    """Next-day retention for each daily cohort, newest first."""
    start, end = params.window()
    # Day-one activity of the last cohort may fall one day past the window.
    last_day = end.date() + timedelta(days=1)
    if not params.date_to:
        last_day = min(last_day, today_utc())
    rows = anomaly.get_retention_cohorts(
        website_id, "day", start.date().isoformat(), last_day.isoformat(), max_k=1
    )

    cohorts: dict[str, dict[str, int]] = {}
    for row in rows:
        cohorts.setdefault(row["cohort_start"], {"size": 0, "returned": 0})
        key = "size" if row["k"] == 0 else "returned"
        cohorts[row["cohort_start"]][key] = row["active_users"]

    last_cohort = end.date().isoformat()
    days = []
    for cohort_start in sorted(cohorts, reverse=True):
        if cohort_start > last_cohort:
            continue
        size, returned = cohorts[cohort_start]["size"], cohorts[cohort_start]["returned"]
        days.append({
            "date": cohort_start,
            "cohort_size": size,
            "returned_next_day": returned,
            "retention_rate": round2(percentage(returned, size)),
        })
    days = days[:params.days]

    total_size = sum(d["cohort_size"] for d in days)
    total_returned = sum(d["returned_next_day"] for d in days)
    return {
        **_window_fields(start, end),
        "days": days,
        "summary": {
            "cohorts": len(days),
            "total_users": total_size,
            "returned_users": total_returned,
            "averageRetentionRate": round2(percentage(total_returned, total_size)),
        },
    }


REPORT_TOOLS = [
    ChatTool(
        name="get-bounce-rate",
        description="Visits, single-page visits and bounce rate per day, week or month.",
        input_model=BucketedInput,
        handler=_bounce_rate,
    ),
    ChatTool(
        name="get-average-session-length",
        description="Session count and average first-to-last pageview time per day, week or month.",
        input_model=SessionLengthInput,
        handler=_average_session_length,
    ),
    ChatTool(
        name="get-page-views",
        description="Total views and unique visitors per page path, optionally for paths containing some text.",
        input_model=PageViewsInput,
        handler=_page_views,
    ),
    ChatTool(
        name="get-detailed-page-views",
        description=(
            "Per-path views, visitors, visits, average visit length, views per visit "
            "and single-page visits."
        ),
        input_model=DetailedPageViewsInput,
        handler=_detailed_page_views,
    ),
    ChatTool(
        name="get-path-table",
        description="Top page paths by unique visitors, with view counts.",
        input_model=TableInput,
        handler=_path_table,
    ),
    ChatTool(
        name="get-country-table",
        description="Top visitor countries by unique visitors, with view counts.",
        input_model=TableInput,
        handler=_country_table,
    ),
    ChatTool(
        name="get-retention",
        description="Share of each day's new sessions that come back the next day, newest day first.",
        input_model=RetentionInput,
        handler=_retention,
    ),
]
