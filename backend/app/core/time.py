"""
Clock helpers.

Event and session timestamps are stored as UTC. Naive datetimes coming from
SQLite or ClickHouse rows are read as UTC as well.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def today_utc() -> date:
    """Current calendar day in UTC."""
    return now_utc().date()


def days_before(days: int, anchor: date | None = None) -> date:
    """The day `days` days before `anchor` (today by default)."""
    return (anchor or today_utc()) - timedelta(days=days)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive values and convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
