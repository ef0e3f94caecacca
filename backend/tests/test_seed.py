from __future__ import annotations

import argparse
import random
from datetime import date, timedelta

import pytest

from app.core.time import today_utc
from app.models.models import WebsiteEvent
from app.queries.common import day_end, day_start
from app.seed import cli, generators, writer


class _RecordingSession:
    def __init__(self):
        self.batches = []

    def execute(self, statement, rows):
        self.batches.append(len(rows))


def test_insert_rows_chunks():
    db = _RecordingSession()
    rows = [{"event_id": str(index)} for index in range(2500)]

    written = writer.insert_rows(db, WebsiteEvent, rows, chunk_size=1000)

    assert written == 2500
    assert db.batches == [1000, 1000, 500]


def test_seed_batch_rows_share_keys():
    batch = writer.SeedBatch("site")
    first = batch.add_session(day_start(date(2025, 7, 1)), device="mobile")
    batch.add_session(day_start(date(2025, 7, 1)), country="US", browser="Chrome")
    batch.add_event(first, day_start(date(2025, 7, 1)), "/")
    batch.add_event(first, day_start(date(2025, 7, 1)), "/buy", event_name="purchase", utm_source="email")

    assert batch.sessions[0].keys() == batch.sessions[1].keys()
    assert batch.events[0].keys() == batch.events[1].keys()
    assert [event["event_type"] for event in batch.events] == [1, 2]
    assert batch.events[0]["visit_id"] == first

    with pytest.raises(ValueError):
        batch.add_session(day_start(date(2025, 7, 1)), favourite_colour="blue")


def test_write_batch_creates_website_and_counts_rows(session_factory):
    batch = generators.signup_conversion(
        "0b7d2c9e-4f61-4c55-9d0e-3c1a2b4d5e6f", date(2025, 7, 1), date(2025, 7, 2), random.Random(4),
        sessions=20, pageviews=60, signups=5,
    )

    written = writer.write_batch(batch, chunk_size=7)

    assert written == {"sessions": 20, "events": 65}
    assert writer.count_rows(batch.website_id) == {"eventData": 0, "websiteEvents": 65, "sessions": 20}
    assert batch.stats["expectedConversionRate"] == round(5 / 60 * 100, 2)


def test_signup_conversion_rejects_more_signups_than_sessions():
    with pytest.raises(ValueError):
        generators.signup_conversion("site", date(2025, 7, 1), date(2025, 7, 2), random.Random(0), sessions=3, signups=4)


def test_reset_range_only_touches_sessions_in_range(website_id):
    batch = writer.SeedBatch(website_id)
    for day in (date(2025, 7, 1), date(2025, 7, 5)):
        session_id = batch.add_session(day_start(day) + timedelta(hours=1))
        batch.add_event(session_id, day_start(day) + timedelta(hours=1), "/")
        batch.add_event(session_id, day_start(day) + timedelta(hours=2), "/", event_name="signup")
    writer.write_batch(batch)

    deleted = writer.reset_range(website_id, day_start(date(2025, 7, 4)), day_end(date(2025, 7, 6)))

    assert deleted == {"eventData": 0, "websiteEvents": 2, "sessions": 1}
    assert writer.count_rows(website_id) == {"eventData": 0, "websiteEvents": 2, "sessions": 1}


def test_clear_website(website_id):
    writer.write_batch(generators.signup_conversion(
        website_id, date(2025, 7, 1), date(2025, 7, 1), random.Random(2), sessions=5, pageviews=10, signups=1
    ))

    deleted = writer.clear_website(website_id)

    assert deleted["websiteEvents"] == 11
    assert deleted["sessions"] == 5
    assert writer.count_rows() == {"eventData": 0, "websiteEvents": 0, "sessions": 0}


def test_drop_correlated_stats_add_up():
    batch = generators.drop_correlated(
        "site", date(2025, 7, 1), date(2025, 7, 2), random.Random(8), sessions_per_day=(5, 10)
    )

    stats = batch.stats
    assert stats["sessions"] == len(batch.sessions)
    assert stats["convertingSessions"] + stats["nonConvertingSessions"] == stats["sessions"]
    assert stats["events"] == len(batch.events)
    converted = {e["session_id"] for e in batch.events if e["event_name"] in generators.CONVERSION_EVENTS}
    assert len(converted) == stats["convertingSessions"]


def test_funnel_sessions_sequential_counts_never_increase():
    batch = writer.SeedBatch("site")
    counts = generators.funnel_sessions(
        batch, ["a", "b", "c"], [1.0, 0.5, 0.5], 200, date(2025, 7, 1), date(2025, 7, 3), random.Random(6)
    )

    assert counts[0] == 200
    assert counts[0] >= counts[1] >= counts[2]
    window_end = day_end(date(2025, 7, 3))
    assert all(event["created_at"] <= window_end for event in batch.events)

    with pytest.raises(ValueError):
        generators.funnel_sessions(batch, ["a"], [1.0, 0.5], 1, date(2025, 7, 1), date(2025, 7, 1), random.Random(0))


def test_anomaly_timeseries_marks_spike_day():
    batch = generators.anomaly_timeseries("site", date(2025, 6, 1), 10, random.Random(1), multiplier=3)

    days = batch.stats["days"]
    assert len(days) == 10
    assert batch.stats["anomalyDate"] == "2025-06-08"
    assert sum(day["pageviews"] for day in days) == len(batch.events)
    assert days[7]["pageviews"] >= 36


def test_retention_dips_cohorts_are_nested():
    batch = generators.retention_dips(
        "site", date(2025, 6, 2), date(2025, 7, 27), random.Random(3), cohort_size=50, anomaly_cohort=date(2025, 6, 11)
    )

    cohorts = batch.stats["cohorts"]
    assert cohorts[0]["cohort"] == "2025-06-02"
    assert [c["pattern"] for c in cohorts].count("anomaly") == 1
    assert cohorts[1]["pattern"] == "anomaly"
    for cohort in cohorts:
        assert cohort["active"][0] == 50
        assert cohort["active"] == sorted(cohort["active"], reverse=True)


def _args(*argv):
    parser = argparse.ArgumentParser()
    cli.add_common_arguments(parser, default_days=14)
    return parser.parse_args(list(argv))


def test_cli_dates():
    assert cli.resolve_dates(_args("--from", "2025-07-01", "--to", "2025-07-03")) == (date(2025, 7, 1), date(2025, 7, 3))
    start, end = cli.resolve_dates(_args())
    assert end == today_utc()
    assert end - start == timedelta(days=14)

    with pytest.raises(ValueError):
        cli.resolve_dates(_args("--from", "2025-07-03", "--to", "2025-07-01"))


def test_cli_website_aliases(monkeypatch):
    monkeypatch.setattr(cli.settings, "DEFAULT_WEBSITE_ID", "")

    assert cli.resolve_website_id(_args("--website", "abc")) == "abc"
    assert len(cli.resolve_website_id(_args())) == 36


def test_cli_run_reports_failure(capsys):
    def _fails(argv):
        raise RuntimeError("database unreachable")

    assert cli.run(_fails, []) == 1
    assert "database unreachable" in capsys.readouterr().err
    assert cli.run(lambda argv: None, []) == 0
