from __future__ import annotations

import random
from datetime import date

import pytest

from app.queries import anomaly, events, reports
from app.queries.common import day_end, day_start
from app.seed import generators, writer

DAY = date(2025, 7, 1)
START, END = day_start(DAY), day_end(DAY)


def test_signup_conversion_rate_matches_seeded_counts(website_id):
    first, last = date(2025, 7, 1), date(2025, 7, 7)
    batch = generators.signup_conversion(website_id, first, last, random.Random(3))
    writer.write_batch(batch)

    result = events.get_signup_conversion_rate(website_id, day_start(first), day_end(last))

    assert result["totalVisits"] == 500
    assert result["totalSignups"] == 25
    assert result["conversionRate"] == 5.0
    assert result["conversionRate"] == batch.stats["expectedConversionRate"]
    assert result["breakdown"]["signups"]["uniqueUsers"] == 25
    assert result["breakdown"]["visits"]["uniqueVisitors"] <= 100


def test_signup_conversion_rate_with_no_traffic(website_id):
    result = events.get_signup_conversion_rate(website_id, START, END)

    assert result["totalVisits"] == 0
    assert result["conversionRate"] == 0


def test_average_events_per_session(shop):
    result = events.get_average_events_per_session(shop, START, END)

    assert result["totalEvents"] == 7
    assert result["totalSessions"] == 3
    assert result["averageEventsPerSession"] == pytest.approx(7 / 3)
    assert [(row["eventCount"], row["sessionCount"]) for row in result["breakdown"]] == [(1, 1), (2, 1), (4, 1)]


def test_average_events_per_session_for_one_event(shop):
    result = events.get_average_events_per_session(shop, START, END, event_name="add_to_cart")

    assert result["totalEvents"] == 2
    assert result["totalSessions"] == 2
    assert result["averageEventsPerSession"] == 1


def test_most_frequent_events(shop):
    result = events.get_most_frequent_events(shop, START, END)

    assert result["totalEvents"] == 3
    assert [(e["eventName"], e["eventCount"]) for e in result["events"]] == [
        ("add_to_cart", 2),
        ("checkout_success", 1),
    ]
    assert result["events"][0]["percentage"] == pytest.approx(200 / 3)
    assert result["period"] == {"startDate": "2025-07-01", "endDate": "2025-07-01"}


def test_event_conversion_funnel_defaults(shop):
    result = events.get_event_conversion_funnel(shop, START, END)

    # The browser session fired its custom event before its only pageview.
    assert result["startedSessions"] == 3
    assert result["convertedSessions"] == 1
    assert result["eventX"] is None


def test_event_conversion_funnel_named_events(shop):
    result = events.get_event_conversion_funnel(
        shop, START, END, event_x="add_to_cart", event_y="checkout_success"
    )

    assert result["startedSessions"] == 2
    assert result["convertedSessions"] == 1
    assert result["conversionRate"] == 50.0


def test_event_dropoffs(shop):
    result = events.get_event_dropoffs(shop, START, END)

    assert result["items"] == [
        {"eventName": "checkout_success", "sessionsWithEvent": 1, "dropoffSessions": 1, "dropoffRate": 100.0},
        {"eventName": "add_to_cart", "sessionsWithEvent": 2, "dropoffSessions": 0, "dropoffRate": 0.0},
    ]


def test_event_frequency_distribution(shop):
    overall = events.get_event_frequency_distribution(shop, START, END)
    assert overall["usersWithOneEvent"] == 1
    assert overall["usersWithMultipleEvents"] == 2
    assert overall["totalUniqueUsers"] == 3

    carts = events.get_event_frequency_distribution(shop, START, END, event_name="add_to_cart")
    assert carts["usersWithOneEvent"] == 2
    assert carts["usersWithMultipleEvents"] == 0
    assert carts["breakdown"] == [{"eventCount": 1, "userCount": 2}]


def test_event_comparison(shop):
    result = events.get_event_comparison(shop, START, END)

    assert result["addToCartCount"] == 2
    assert result["checkoutCount"] == 1
    assert result["successRate"] == 50.0
    assert result["totalEvents"] == 3


def test_unique_button_click_users(shop):
    result = events.get_unique_button_click_users(shop, START, END, "add_to_cart")

    assert result == {
        "uniqueUsers": 2,
        "totalClicks": 2,
        "eventName": "add_to_cart",
        "period": {"startDate": "2025-07-01", "endDate": "2025-07-01"},
    }


def test_new_user_first_day_event_rate(shop):
    any_custom = events.get_new_user_first_day_event_rate(shop, START, END)
    assert any_custom["totalSessions"] == 3
    assert any_custom["sessionsWithEventOnFirstDay"] == 2

    checkout = events.get_new_user_first_day_event_rate(shop, START, END, event_name="checkout_success")
    assert checkout["sessionsWithEventOnFirstDay"] == 1
    assert checkout["percentage"] == pytest.approx(100 / 3)


def test_filtered_event_counts_by_session_dimension(shop):
    result = events.get_filtered_event_counts(
        shop,
        {"start_date": START, "end_date": END, "event_type": 1, "dimensions": {"country": "US"}},
    )

    assert result["events"] == [{"eventType": 1, "eventName": None, "eventCount": 3, "sessionCount": 2}]
    assert result["totalEvents"] == 3


def test_contains_filter_matches_wildcards_literally(shop):
    def _total(op, value):
        dimensions = {"path": {"op": op, "value": value}}
        return events.get_filtered_event_counts(shop, {"start_date": START, "end_date": END, "dimensions": dimensions})[
            "totalEvents"
        ]

    assert _total("contains", "/pro") == 3
    assert _total("contains", "%") == 0
    assert _total("contains", "_") == 0
    assert _total("not_contains", "%") == 7


def test_web_statistics(shop):
    stats = reports.get_web_statistics(shop, {"start_date": START, "end_date": END})

    assert stats["pageviews"] == 4
    assert stats["visitors"] == 3
    assert stats["visits"] == 3
    assert stats["bounces"] == 2
    assert stats["totaltime"] == 60


def test_websites_listing(website_id):
    sites = reports.get_websites()

    assert [site["id"] for site in sites] == [website_id]
    assert sites[0]["domain"] == "test.example"


def test_timeseries_pageviews_follow_seeded_days(website_id):
    batch = generators.anomaly_timeseries(website_id, date(2025, 6, 1), 10, random.Random(5))
    writer.write_batch(batch)

    points = anomaly.get_timeseries(website_id, "pageviews", "2025-06-01", "2025-06-10")

    assert [(p["bucket"], p["value"]) for p in points] == [
        (day["date"], float(day["pageviews"])) for day in batch.stats["days"]
    ]


def test_timeseries_rejects_unknown_metric(website_id):
    with pytest.raises(ValueError):
        anomaly.get_timeseries(website_id, "revenue", "2025-06-01", "2025-06-10")
    with pytest.raises(ValueError):
        anomaly.get_timeseries(website_id, "visits", "2025-06-01", "2025-06-10", interval="year")


def test_retention_cohorts_follow_seeded_pattern(website_id):
    batch = generators.retention_dips(website_id, date(2025, 6, 2), date(2025, 6, 29), random.Random(9), cohort_size=20)
    writer.write_batch(batch)

    rows = anomaly.get_retention_cohorts(website_id, "week", "2025-06-02", "2025-06-29")
    by_cell = {(row["cohort_start"], row["k"]): row["active_users"] for row in rows}

    for cohort in batch.stats["cohorts"]:
        for k, active in enumerate(cohort["active"]):
            assert by_cell[(cohort["cohort"], k)] == active


def test_segment_totals_by_device(shop):
    totals = anomaly.get_segment_totals(shop, "pageviews", "device", "2025-07-01", "2025-07-01")

    assert totals == [{"label": "desktop", "value": 2}, {"label": "mobile", "value": 2}]

    visits = anomaly.get_segment_totals(shop, "visits", "country", "2025-07-01", "2025-07-01")
    assert visits == [{"label": "us", "value": 2}, {"label": "de", "value": 1}]


def test_path_transitions(shop):
    transitions = anomaly.get_path_dropoff_transitions(shop, "2025-07-01", "2025-07-01")
    as_set = {(t["from_path"], t["to_path"], t["transitions"]) for t in transitions}

    assert ("/home", "/product", 1) in as_set
    assert ("/home", None, 2) in as_set
    assert ("/product", None, 1) in as_set


def test_path_transitions_tie_break_on_paths(shop):
    transitions = anomaly.get_path_dropoff_transitions(shop, "2025-07-01", "2025-07-01")

    assert [(t["from_path"], t["to_path"], t["transitions"]) for t in transitions] == [
        ("/home", None, 2),
        ("/home", "/product", 1),
        ("/product", None, 1),
    ]
