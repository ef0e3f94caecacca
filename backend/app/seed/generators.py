"""
Synthetic analytics data with known shapes.

Each generator fills a SeedBatch and records what it produced in
`batch.stats`, so callers can print expected tool results next to the
actual ones. Pass a seeded `random.Random` for reproducible data.
"""

from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from app.queries.common import day_end, day_start
from app.seed.writer import SeedBatch, new_id

DEVICES = ("desktop", "mobile", "tablet")
BROWSERS = ("Chrome", "Firefox", "Safari", "Edge")
OPERATING_SYSTEMS = ("Windows", "macOS", "Linux", "iOS", "Android")
COUNTRIES = ("US", "CA", "GB", "DE", "FR", "JP", "AU")
REFERRERS = ("google.com", "facebook.com", None)
UTM_SOURCES = ("organic", "social", "email", "paid")

FUNNELS = [
    {
        "name": "E-commerce Checkout",
        "steps": ["view_product", "add_to_cart", "start_checkout", "payment_info", "purchase_complete"],
        "rates": [1.0, 0.15, 0.08, 0.06, 0.04],
        "visitors": 1000,
    },
    {
        "name": "User Onboarding",
        "steps": ["signup_started", "email_verified", "profile_created", "first_action", "feature_adopted"],
        "rates": [1.0, 0.85, 0.7, 0.55, 0.4],
        "visitors": 800,
    },
    {
        "name": "Lead Generation",
        "steps": ["landing_page_view", "form_started", "form_completed", "lead_qualified", "contact_made"],
        "rates": [1.0, 0.25, 0.18, 0.12, 0.08],
        "visitors": 600,
    },
]

# (event name, probability weight among sessions that never convert)
DROP_EVENTS = [
    ("clicked_button", 0.15),
    ("scrolled_page", 0.2),
    ("opened_menu", 0.25),
    ("clicked_help", 0.35),
    ("opened_settings", 0.4),
    ("viewed_pricing", 0.45),
    ("added_to_cart", 0.5),
    ("started_checkout", 0.55),
    ("entered_email", 0.6),
    ("viewed_faq", 0.7),
    ("contacted_support", 0.75),
    ("shared_content", 0.85),
]
CONVERSION_EVENTS = ("purchase_complete", "signup_complete", "subscription_started")

RETENTION_PATTERNS = {
    "baseline": [1.0, 0.35, 0.25, 0.18, 0.14, 0.12, 0.1, 0.09, 0.08],
    "anomaly": [1.0, 0.2, 0.15, 0.12, 0.1, 0.08, 0.07, 0.06, 0.05],
}


def profile(rng: random.Random) -> dict[str, str]:
    return {
        "device": rng.choice(DEVICES),
        "browser": rng.choice(BROWSERS),
        "os": rng.choice(OPERATING_SYSTEMS),
        "country": rng.choice(COUNTRIES),
    }


def traffic_source(rng: random.Random) -> dict[str, Optional[str]]:
    return {"referrer_domain": rng.choice(REFERRERS), "utm_source": rng.choice(UTM_SOURCES)}


def random_instant(rng: random.Random, start: datetime, end: datetime) -> datetime:
    span = max(0, int((end - start).total_seconds()))
    return start + timedelta(seconds=rng.randint(0, span))


def days_between(start: date, end: date) -> list[date]:
    if end < start:
        raise ValueError("end date must not be before start date")
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def signup_conversion(
    website_id: str,
    start: date,
    end: date,
    rng: random.Random,
    sessions: int = 100,
    pageviews: int = 500,
    signups: int = 25,
    signup_event_name: str = "signup",
) -> SeedBatch:
    """`sessions` sessions, `pageviews` pageviews, and `signups` sessions that sign up exactly once."""
    if signups > sessions:
        raise ValueError("signups cannot exceed sessions")
    batch = SeedBatch(website_id)
    window_start, window_end = day_start(start), day_end(end)

    session_ids = [
        batch.add_session(random_instant(rng, window_start, window_end), **profile(rng))
        for _ in range(sessions)
    ]
    for _ in range(pageviews):
        batch.add_event(rng.choice(session_ids), random_instant(rng, window_start, window_end), "/home")
    for session_id in rng.sample(session_ids, signups):
        batch.add_event(
            session_id,
            random_instant(rng, window_start, window_end),
            "/signup",
            event_name=signup_event_name,
        )

    batch.stats = {
        "sessions": sessions,
        "pageviews": pageviews,
        "signups": signups,
        "expectedConversionRate": round(signups / pageviews * 100, 2) if pageviews else 0,
    }
    return batch


def funnel_sessions(
    batch: SeedBatch,
    steps: Sequence[str],
    rates: Sequence[float],
    sessions: int,
    start: date,
    end: date,
    rng: random.Random,
    sequential: bool = True,
) -> list[int]:
    """
    Add `sessions` sessions walking through `steps`.

    With `sequential` each rate is the chance of continuing from the previous
    step and a session stops at its first miss. Otherwise every step fires
    independently with its own rate. Returns how many sessions fired each step.
    """
    if len(steps) != len(rates):
        raise ValueError("steps and rates must have the same length")
    counts = [0] * len(steps)
    window_start, window_end = day_start(start), day_end(end)

    for _ in range(sessions):
        created_at = random_instant(rng, window_start, window_end - timedelta(hours=1))
        session_id = batch.add_session(created_at, distinct_id=new_id(), **profile(rng))
        source = traffic_source(rng)
        batch.add_event(session_id, created_at, "/", **source)

        moment = created_at
        for index, (step, rate) in enumerate(zip(steps, rates)):
            if rng.random() >= rate:
                if sequential:
                    break
                continue
            moment = moment + timedelta(minutes=rng.randint(1, 10))
            batch.add_event(session_id, moment, "/" + step.replace("_", "-"), event_name=step, **source)
            counts[index] += 1
    return counts


def event_drop_chain(
    website_id: str,
    start: date,
    end: date,
    rng: random.Random,
    funnels: Sequence[dict] = FUNNELS,
) -> SeedBatch:
    batch = SeedBatch(website_id)
    by_funnel = {}
    for funnel in funnels:
        counts = funnel_sessions(
            batch, funnel["steps"], funnel["rates"], funnel["visitors"], start, end, rng, sequential=True
        )
        by_funnel[funnel["name"]] = dict(zip(funnel["steps"], counts))
    batch.stats = {"sessions": len(batch.sessions), "events": len(batch.events), "funnels": by_funnel}
    return batch


def _weighted_event(rng: random.Random, converting: bool) -> str:
    names = [name for name, _ in DROP_EVENTS]
    weights = [(1 - weight) if converting else weight for _, weight in DROP_EVENTS]
    return rng.choices(names, weights=weights, k=1)[0]


def drop_correlated(
    website_id: str,
    start: date,
    end: date,
    rng: random.Random,
    sessions_per_day: tuple[int, int] = (50, 100),
    conversion_rate: float = 0.3,
    conversion_events: Sequence[str] = CONVERSION_EVENTS,
) -> SeedBatch:
    """
    Sessions whose custom events skew by outcome: non-converting sessions
    favor the high-weight events in DROP_EVENTS, converting ones the rest.
    Every custom event is preceded by a pageview of the matching path.
    """
    batch = SeedBatch(website_id)
    converting = 0
    non_converting = 0

    for day in days_between(start, end):
        for _ in range(rng.randint(*sessions_per_day)):
            created_at = random_instant(rng, day_start(day), day_end(day) - timedelta(hours=2))
            session_id = batch.add_session(created_at, distinct_id=new_id(), **profile(rng))
            source = traffic_source(rng)
            will_convert = rng.random() < conversion_rate

            moment = created_at
            for _ in range(rng.randint(3, 15)):
                name = _weighted_event(rng, will_convert)
                path = "/" + name.replace("_", "-")
                batch.add_event(session_id, moment, path, **source)
                batch.add_event(session_id, moment + timedelta(seconds=5), path, event_name=name, **source)
                moment = moment + timedelta(seconds=rng.randint(20, 300))

            if will_convert:
                converting += 1
                batch.add_event(
                    session_id,
                    moment + timedelta(minutes=rng.randint(1, 10)),
                    "/thank-you",
                    event_name=rng.choice(conversion_events),
                    **source,
                )
            else:
                non_converting += 1

    batch.stats = {
        "sessions": converting + non_converting,
        "convertingSessions": converting,
        "nonConvertingSessions": non_converting,
        "events": len(batch.events),
    }
    return batch


def anomaly_timeseries(
    website_id: str,
    start: date,
    days: int,
    rng: random.Random,
    anomaly_index: int = 7,
    multiplier: float = 2.5,
    baseline: tuple[int, int] = (12, 20),
) -> SeedBatch:
    """Steady daily pageviews with one spike day at `anomaly_index`."""
    batch = SeedBatch(website_id)
    daily = []

    for index, day in enumerate(days_between(start, start + timedelta(days=days - 1))):
        pageviews = round(rng.randint(*baseline) * (multiplier if index == anomaly_index else 1))
        visits = max(5, min(pageviews, round(pageviews / 2)))
        session_ids = [
            batch.add_session(random_instant(rng, day_start(day), day_start(day) + timedelta(hours=1)), **profile(rng))
            for _ in range(visits)
        ]
        remaining = pageviews
        position = 0
        while remaining > 0:
            session_id = session_ids[position % len(session_ids)]
            for _ in range(min(remaining, rng.randint(1, 3))):
                batch.add_event(
                    session_id,
                    random_instant(rng, day_start(day) + timedelta(hours=1), day_end(day)),
                    rng.choice(("/", "/pricing", "/docs", "/blog")),
                    **traffic_source(rng),
                )
                remaining -= 1
            position += 1
        daily.append({"date": day.isoformat(), "pageviews": pageviews, "visits": visits})

    batch.stats = {"days": daily, "anomalyDate": daily[anomaly_index]["date"] if 0 <= anomaly_index < len(daily) else None}
    return batch


def week_start(day: date) -> date:
    """Monday of the ISO week containing `day`."""
    return day - timedelta(days=day.weekday())


def retention_dips(
    website_id: str,
    start: date,
    end: date,
    rng: random.Random,
    cohort_size: int = 200,
    anomaly_cohort: Optional[date] = None,
) -> SeedBatch:
    """
    Weekly cohorts of one-session users. A user active at week k was active
    at every earlier week; the cohort containing `anomaly_cohort` follows the
    weaker retention pattern.
    """
    batch = SeedBatch(website_id)
    first = week_start(start)
    if first < start:
        first += timedelta(days=7)
    anomaly_week = week_start(anomaly_cohort) if anomaly_cohort else None
    window_end = day_end(end)

    cohorts = []
    cohort_day = first
    while cohort_day <= end:
        pattern_name = "anomaly" if cohort_day == anomaly_week else "baseline"
        pattern = RETENTION_PATTERNS[pattern_name]
        users = []
        for _ in range(cohort_size):
            joined = day_start(cohort_day) + timedelta(seconds=rng.randint(0, 6 * 86400))
            users.append((batch.add_session(joined, distinct_id=new_id(), **profile(rng)), joined))

        active_counts = []
        for k, rate in enumerate(pattern):
            period_start = day_start(cohort_day + timedelta(days=7 * k))
            if period_start > window_end:
                break
            active = round(cohort_size * rate)
            for session_id, joined in users[:active]:
                when = joined if k == 0 else period_start + timedelta(seconds=rng.randint(0, 6 * 86400))
                batch.add_event(session_id, min(when, window_end), "/app")
            active_counts.append(active)
        cohorts.append({"cohort": cohort_day.isoformat(), "pattern": pattern_name, "active": active_counts})
        cohort_day += timedelta(days=7)

    batch.stats = {"cohorts": cohorts, "cohortSize": cohort_size}
    return batch
