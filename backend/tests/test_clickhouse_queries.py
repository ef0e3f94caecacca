from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest

from app.core import clickhouse
from app.core.config import settings
from app.queries import anomaly, conversion_drop, events, reports

WEBSITE_ID = "5801af32-ebe2-4273-9e58-89de8971a2fd"
START = datetime(2025, 7, 8, tzinfo=timezone.utc)
END = datetime(2025, 7, 14, 23, 59, 59, tzinfo=timezone.utc)
PREV_START = datetime(2025, 7, 1, tzinfo=timezone.utc)
PREV_END = datetime(2025, 7, 7, 23, 59, 59, tzinfo=timezone.utc)

PLACEHOLDER = re.compile(r"\{(\w+):([^{}]+)\}")

FILTERS = {
    "start_date": START,
    "end_date": END,
    "event_type": 2,
    "event_name": "signup",
    "dimensions": {
        "country": "US",
        "device": ["mobile", "tablet"],
        "path": {"op": "contains", "value": "/pricing"},
        "referrer": {"op": "not_contains", "value": "ads"},
        "browser": {"op": "neq", "value": "safari"},
    },
    "cohort": {"start_date": PREV_START, "end_date": END, "event_name": "signup"},
}


class CapturingClickHouse:
    """Stands in for `clickhouse.raw_query`, recording every statement."""

    def __init__(self, responses=None):
        self.calls: list[tuple[str, dict]] = []
        self.responses = list(responses or [])

    def __call__(self, sql, params=None):
        self.calls.append((sql, dict(params or {})))
        return self.responses.pop(0) if self.responses else []


@pytest.fixture
def captured(monkeypatch):
    fake = CapturingClickHouse()
    monkeypatch.setattr(settings, "ANALYTICS_BACKEND", "clickhouse")
    monkeypatch.setattr(clickhouse, "raw_query", fake)
    return fake


def assert_bound(calls):
    assert calls, "no ClickHouse statement was issued"
    for sql, params in calls:
        assert "{{" not in sql, sql
        for name, ch_type in PLACEHOLDER.findall(sql):
            assert params.get(name) is not None, f"{name}:{ch_type} is unbound in:\n{sql}"


QUERIES = {
    # events
    "average_events": lambda: events.get_average_events_per_session(WEBSITE_ID, START, END),
    "average_events_named": lambda: events.get_average_events_per_session(WEBSITE_ID, START, END, "signup"),
    "most_frequent": lambda: events.get_most_frequent_events(WEBSITE_ID, START, END, 5),
    "signup_conversion": lambda: events.get_signup_conversion_rate(WEBSITE_ID, START, END),
    "funnel_defaults": lambda: events.get_event_conversion_funnel(WEBSITE_ID, START, END),
    "funnel_named": lambda: events.get_event_conversion_funnel(WEBSITE_ID, START, END, "view", "buy"),
    "dropoffs": lambda: events.get_event_dropoffs(WEBSITE_ID, START, END),
    "dropoffs_named": lambda: events.get_event_dropoffs(WEBSITE_ID, START, END, "signup"),
    "frequency": lambda: events.get_event_frequency_distribution(WEBSITE_ID, START, END),
    "frequency_named": lambda: events.get_event_frequency_distribution(WEBSITE_ID, START, END, "signup", 2),
    "comparison": lambda: events.get_event_comparison(WEBSITE_ID, START, END, "add_to_cart", "checkout"),
    "button_clicks": lambda: events.get_unique_button_click_users(WEBSITE_ID, START, END, "cta"),
    "first_day": lambda: events.get_new_user_first_day_event_rate(WEBSITE_ID, START, END),
    "first_day_named": lambda: events.get_new_user_first_day_event_rate(WEBSITE_ID, START, END, "signup"),
    "filtered_counts": lambda: events.get_filtered_event_counts(WEBSITE_ID, FILTERS),
    "total_event_count": lambda: events.get_total_event_count(WEBSITE_ID, START, END, "signup"),
    "unique_users": lambda: events.get_unique_users(WEBSITE_ID, START, END),
    "events_per_period": lambda: events.get_events_per_period(WEBSITE_ID, START, END, "week", "signup"),
    "returning_users": lambda: events.get_returning_event_users(WEBSITE_ID, START, END, "month"),
    "segmented_events": lambda: events.get_segmented_events(WEBSITE_ID, START, END, "country", "signup"),
    # reports
    "web_statistics": lambda: reports.get_web_statistics(WEBSITE_ID, FILTERS),
    "bounce_rate": lambda: reports.get_bounce_rate(WEBSITE_ID, START, END, "week"),
    "session_length": lambda: reports.get_average_session_length(WEBSITE_ID, START, END, "month", False),
    "path_table": lambda: reports.get_path_table(WEBSITE_ID, FILTERS),
    "country_table": lambda: reports.get_country_table(WEBSITE_ID, {"start_date": START, "end_date": END}),
    "page_views": lambda: reports.get_page_views(WEBSITE_ID, START, END, "/pricing"),
    "page_views_all": lambda: reports.get_page_views(WEBSITE_ID, START, END),
    # conversion drop
    "total_conversion_drop": lambda: conversion_drop.get_total_conversion_drop(
        WEBSITE_ID, "signup", START, END, PREV_START, PREV_END
    ),
    "drop_correlated_events": lambda: conversion_drop.get_drop_correlated_events(
        WEBSITE_ID, "signup", START, END, compare_with_converters=True
    ),
    "drop_correlated_pages": lambda: conversion_drop.get_drop_correlated_pages(WEBSITE_ID, "signup", START, END),
    "drop_chain_sessions": lambda: conversion_drop.get_event_drop_chain(WEBSITE_ID, ["view", "signup"], START, END),
    "drop_chain_visitors": lambda: conversion_drop.get_event_drop_chain(
        WEBSITE_ID, ["view", "signup"], START, END, distinct_by="visitor_id"
    ),
    "segment_shift": lambda: conversion_drop.compare_by_segment_shift(
        WEBSITE_ID, "signup", ["device", "source", "path"], START, END, PREV_START, PREV_END
    ),
    "by_country": lambda: conversion_drop.compare_by_segment(
        WEBSITE_ID, "signup", "country", START, END, PREV_START, PREV_END
    ),
    # anomaly series
    **{
        f"timeseries_{metric}": (lambda metric=metric: anomaly.get_timeseries(
            WEBSITE_ID, metric, "2025-07-01", "2025-07-14", "hour"
        ))
        for metric in anomaly.TIMESERIES_METRICS
    },
    "retention_cohorts": lambda: anomaly.get_retention_cohorts(WEBSITE_ID, "week", "2025-07-01", "2025-07-14"),
    **{
        f"segment_totals_{metric}_{segment}": (lambda metric=metric, segment=segment: anomaly.get_segment_totals(
            WEBSITE_ID, metric, segment, "2025-07-01", "2025-07-14"
        ))
        for metric in anomaly.SEGMENT_METRICS
        for segment in ("country", "path")
    },
    "path_transitions": lambda: anomaly.get_path_dropoff_transitions(WEBSITE_ID, "2025-07-01", "2025-07-14"),
    "path_transitions_raw": lambda: anomaly.get_path_dropoff_transitions(
        WEBSITE_ID, "2025-07-01", "2025-07-14", normalize_paths=False
    ),
}


@pytest.mark.parametrize("name", sorted(QUERIES))
def test_clickhouse_statements_bind_every_placeholder(captured, name):
    QUERIES[name]()

    assert_bound(captured.calls)


def test_detailed_page_views_binds_both_statements(captured):
    captured.responses = [
        [{"url_path": "/pricing", "total_views": 4, "unique_visitors": 2, "total_sessions": 3}],
        [{"url_path": "/pricing", "avg_duration": 30.0, "bounce_sessions": 1}],
    ]

    pages = reports.get_detailed_page_views(WEBSITE_ID, START, END, "/pricing")

    assert len(captured.calls) == 2
    assert_bound(captured.calls)
    assert pages[0]["avg_session_duration_seconds"] == 30.0
    assert pages[0]["bounce_sessions"] == 1


def test_clickhouse_path_match_uses_position(captured):
    reports.get_page_views(WEBSITE_ID, START, END, "100%_off")

    sql, params = captured.calls[0]
    assert "position(url_path, {path:String}) > 0" in sql
    assert params["path"] == "100%_off"
