from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.chat.registry import build_tools_map
from app.chat.tools import base
from app.core.config import settings
from app.queries import events, reports
from app.queries.common import day_end, day_start
from app.seed import writer

DAY = date(2025, 7, 1)
START, END = day_start(DAY), day_end(DAY)
OTHER_ID = "0b7d2c9e-4f61-4c55-9d0e-3c1a2b4d5e6f"


def _day(offset: int, hour: int = 10) -> datetime:
    return datetime(2025, 7, 1, hour, 0, tzinfo=timezone.utc) + timedelta(days=offset)


def test_bounce_rate_buckets_visits_by_first_pageview(shop):
    assert reports.get_bounce_rate(shop, START, END) == [
        {"bucket_start": "2025-07-01", "visits": 3, "bounces": 2, "bounce_rate": 66.67},
    ]


def test_bounce_rate_rejects_unknown_granularity(shop):
    with pytest.raises(ValueError):
        reports.get_bounce_rate(shop, START, END, granularity="year")


def test_average_session_length(shop):
    with_bounces = reports.get_average_session_length(shop, START, END)
    without_bounces = reports.get_average_session_length(shop, START, END, include_bounces=False)

    assert with_bounces == [
        {"bucket_start": "2025-07-01", "sessions": 3, "total_duration_s": 60, "avg_duration_s": 20.0},
    ]
    assert without_bounces == [
        {"bucket_start": "2025-07-01", "sessions": 1, "total_duration_s": 60, "avg_duration_s": 60.0},
    ]


def test_path_table_counts_pageviews(shop):
    rows = reports.get_path_table(shop, {"start_date": START, "end_date": END})

    assert rows == [
        {"url_path": "/home", "visitors": 3, "views": 3},
        {"url_path": "/product", "visitors": 1, "views": 1},
    ]


def test_path_table_with_session_filter(shop):
    rows = reports.get_path_table(shop, {"start_date": START, "end_date": END, "dimensions": {"device": "mobile"}})

    assert rows == [{"url_path": "/home", "visitors": 2, "views": 2}]


def test_country_table(shop):
    rows = reports.get_country_table(shop, {"start_date": START, "end_date": END})

    assert rows == [
        {"country": "US", "visitors": 2, "views": 3},
        {"country": "DE", "visitors": 1, "views": 1},
    ]


def test_country_table_skips_sessions_without_country(website_id):
    batch = writer.SeedBatch(website_id)
    batch.add_event(batch.add_session(_day(0)), _day(0), "/home")
    batch.add_event(batch.add_session(_day(0), country=""), _day(0), "/home")
    batch.add_event(batch.add_session(_day(0), country="FR"), _day(0), "/home")
    writer.write_batch(batch)

    rows = reports.get_country_table(website_id, {"start_date": START, "end_date": END})

    assert rows == [{"country": "FR", "visitors": 1, "views": 1}]


def test_page_views_with_totals(shop):
    result = reports.get_page_views(shop, START, END)

    assert result["totals"] == {"total_views": 4, "unique_visitors": 3}
    assert result["pages"] == [
        {"url_path": "/home", "total_views": 3, "unique_visitors": 3},
        {"url_path": "/product", "total_views": 1, "unique_visitors": 1},
    ]


def test_page_views_for_matching_paths(shop):
    result = reports.get_page_views(shop, START, END, path="prod")

    assert result["totals"] == {"total_views": 1, "unique_visitors": 1}
    assert [page["url_path"] for page in result["pages"]] == ["/product"]
    assert reports.get_page_views(shop, START, END, path="_")["pages"] == []


def test_detailed_page_views(shop):
    pages = {page["url_path"]: page for page in reports.get_detailed_page_views(shop, START, END)}

    assert pages["/home"] == {
        "url_path": "/home",
        "total_views": 3,
        "unique_visitors": 3,
        "total_sessions": 3,
        "avg_session_duration_seconds": 20.0,
        "avg_views_per_session": 1.0,
        "bounce_sessions": 2,
    }
    assert pages["/product"]["avg_session_duration_seconds"] == 60.0
    assert pages["/product"]["bounce_sessions"] == 0


def test_detailed_page_views_without_data(website_id):
    assert reports.get_detailed_page_views(website_id, START, END) == []


def test_custom_event_totals(shop):
    assert events.get_total_event_count(shop, START, END) == 3
    assert events.get_unique_users(shop, START, END) == 2
    assert events.get_total_event_count(shop, START, END, "add_to_cart") == 2
    assert events.get_unique_users(shop, START, END, "checkout_success") == 1


def test_events_per_period(shop):
    assert events.get_events_per_period(shop, START, END) == [
        {"period": "2025-07-01", "events_count": 3, "unique_users": 2},
    ]


def test_segmented_events_by_device(shop):
    assert events.get_segmented_events(shop, START, END, "device") == [
        {"segment_type": "device", "segment_value": "desktop", "events_count": 2, "unique_users": 1},
        {"segment_type": "device", "segment_value": "mobile", "events_count": 1, "unique_users": 1},
    ]


def test_segmented_events_labels_missing_values(website_id):
    batch = writer.SeedBatch(website_id)
    batch.add_event(batch.add_session(_day(0)), _day(0), "/", event_name="click")
    batch.add_event(batch.add_session(_day(0), browser=""), _day(0), "/", event_name="click")
    writer.write_batch(batch)

    segments = events.get_segmented_events(website_id, START, END, "browser")

    assert segments == [
        {"segment_type": "browser", "segment_value": "Unknown", "events_count": 2, "unique_users": 2},
    ]


def test_returning_event_users(website_id):
    batch = writer.SeedBatch(website_id)
    first = batch.add_session(_day(0), distinct_id="u1")
    batch.add_event(first, _day(0), "/", event_name="search")
    again = batch.add_session(_day(1), distinct_id="u1")
    batch.add_event(again, _day(1), "/", event_name="search")
    newcomer = batch.add_session(_day(1), distinct_id="u2")
    batch.add_event(newcomer, _day(1), "/", event_name="search")
    anonymous = batch.add_session(_day(1))
    batch.add_event(anonymous, _day(1), "/", event_name="search")
    writer.write_batch(batch)

    periods = events.get_returning_event_users(website_id, START, day_end(date(2025, 7, 2)))

    assert periods == [
        {"period": "2025-07-01", "total_users": 1, "returning_users": 0, "returning_rate": 0.0},
        {"period": "2025-07-02", "total_users": 2, "returning_users": 1, "returning_rate": 50.0},
    ]


def test_returning_users_by_period_counts_any_earlier_period():
    periods = events.returning_users_by_period([
        ("2025-07-01", "a"),
        ("2025-07-03", "a"),
        ("2025-07-02", "b"),
        ("2025-07-03", "b"),
        ("2025-07-03", "c"),
    ])

    assert [p["returning_users"] for p in periods] == [0, 0, 2]
    assert periods[2]["returning_rate"] == 66.67


def test_report_tools_are_registered():
    tools = build_tools_map()

    for name in (
        "get-bounce-rate",
        "get-average-session-length",
        "get-page-views",
        "get-detailed-page-views",
        "get-path-table",
        "get-country-table",
        "get-retention",
        "get-returning-event-users",
        "get-segmented-events",
        "get-events-per-period",
        "get-event-trends",
        "get-total-event-count",
        "get-unique-users",
        "set-active-website",
    ):
        assert name in tools


def test_bounce_rate_tool_summarises_series(shop):
    result = build_tools_map()["get-bounce-rate"].execute(
        {"websiteId": shop, "date_from": "2025-07-01", "date_to": "2025-07-01"}
    )

    assert result["summary"] == {"visits": 3, "bounces": 2, "bounce_rate": 66.67}
    assert len(result["series"]) == 1


def test_event_trends_tool(shop):
    result = build_tools_map()["get-event-trends"].execute(
        {"websiteId": shop, "date_from": "2025-07-01", "date_to": "2025-07-01"}
    )

    assert result["summary"] == {"total_events": 3, "periods": 1, "top_segment": "desktop"}
    assert result["returning_users"] == []


def test_retention_tool_reports_next_day_return(website_id):
    batch = writer.SeedBatch(website_id)
    returner = batch.add_session(_day(0))
    batch.add_event(returner, _day(0), "/")
    batch.add_event(returner, _day(1), "/")
    one_off = batch.add_session(_day(0))
    batch.add_event(one_off, _day(0), "/")
    late = batch.add_session(_day(1))
    batch.add_event(late, _day(1), "/")
    writer.write_batch(batch)

    result = build_tools_map()["get-retention"].execute(
        {"websiteId": website_id, "date_from": "2025-07-01", "date_to": "2025-07-02"}
    )

    assert result["days"] == [
        {"date": "2025-07-02", "cohort_size": 1, "returned_next_day": 0, "retention_rate": 0.0},
        {"date": "2025-07-01", "cohort_size": 2, "returned_next_day": 1, "retention_rate": 50.0},
    ]
    assert result["summary"]["averageRetentionRate"] == 33.33


def test_set_active_website_is_used_before_default(website_id, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_WEBSITE_ID", website_id)

    result = build_tools_map()["set-active-website"].execute({"websiteId": OTHER_ID})

    assert result == {"ok": True, "websiteId": OTHER_ID}
    assert base.resolve_website_id() == OTHER_ID
    assert base.resolve_website_id(website_id) == website_id


def test_set_active_website_requires_uuid(session_factory):
    with pytest.raises(ValidationError):
        build_tools_map()["set-active-website"].execute({"websiteId": "my-site"})
    assert base.get_active_website_id() is None


def test_first_website_becomes_active(website_id):
    assert base.get_active_website_id() is None
    assert base.resolve_website_id() == website_id
    assert base.get_active_website_id() == website_id
