"""
Shared numeric and date helpers for query functions.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import re
from typing import Any, Optional

from app.core.time import ensure_utc, now_utc

DAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Percent change inside this band (in percent) is reported as "no_change".
CHANGE_NOISE_BAND = 0.5


def safe_ratio(numerator: int | float, denominator: int | float) -> float:
    den = float(denominator or 0)
    if den <= 0:
        return 0.0
    return float(numerator or 0) / den


def percentage(numerator: int | float, denominator: int | float) -> float:
    """(numerator / denominator) * 100, or 0 when the denominator is not positive."""
    return safe_ratio(numerator, denominator) * 100


def round2(value: float) -> float:
    return round(float(value or 0) * 100) / 100


def as_int(value: Any) -> int:
    return int(value or 0)


def as_float(value: Any) -> float:
    return float(value or 0)


def first_row(rows: list[dict[str, Any]]) -> dict[str, Any]:
    return rows[0] if rows else {}


def change_direction(percent_change: float) -> str:
    if percent_change > CHANGE_NOISE_BAND:
        return "increase"
    if percent_change < -CHANGE_NOISE_BAND:
        return "decrease"
    return "no_change"


def rate_change(current_rate: float, previous_rate: float) -> dict[str, Any]:
    rate_delta = current_rate - previous_rate
    percent_change = percentage(rate_delta, previous_rate) if previous_rate > 0 else 0.0
    return {
        "rateDelta": round(rate_delta, 4),
        "percentChange": round(percent_change, 2),
        "direction": change_direction(percent_change),
    }


def parse_day(value: str) -> date:
    """Parse a YYYY-MM-DD string; raises ValueError on anything else."""
    raw = str(value or "").strip()
    if not DAY_PATTERN.match(raw):
        raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD")
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD") from e


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def day_end(day: date) -> datetime:
    """Last representable instant of `day` (inclusive upper bound for BETWEEN)."""
    return day_start(day) + timedelta(days=1) - timedelta(microseconds=1)


def day_window(date_from: str, date_to: str) -> tuple[datetime, datetime]:
    """Inclusive [start, end] window covering whole days from `date_from` to `date_to`."""
    start_day = parse_day(date_from)
    end_day = parse_day(date_to)
    if end_day < start_day:
        raise ValueError("date_to must not be before date_from")
    return day_start(start_day), day_end(end_day)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime string into an aware UTC datetime."""
    if value is None or str(value).strip() == "":
        return None
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError as e:
        raise ValueError(f"Invalid datetime {value!r}; expected ISO-8601") from e


def default_range(start: Optional[str], end: Optional[str], days: int = 7) -> tuple[datetime, datetime]:
    """Resolve optional start/end strings, defaulting to the trailing `days` days ending now."""
    end_dt = parse_datetime(end) or now_utc()
    start_dt = parse_datetime(start) or (end_dt - timedelta(days=days))
    return start_dt, end_dt


def previous_window(date_from: str, date_to: str) -> tuple[str, str]:
    """The window of equal length immediately before [date_from, date_to]."""
    start_day = parse_day(date_from)
    end_day = parse_day(date_to)
    days = (end_day - start_day).days + 1
    prev_to = start_day - timedelta(days=1)
    prev_from = prev_to - timedelta(days=days - 1)
    return prev_from.isoformat(), prev_to.isoformat()


def normalize_bucket(value: Any, unit: str = "day") -> str:
    """Render a truncated timestamp (datetime, date or string) as a stable ISO label."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        dt = ensure_utc(value)
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min, tzinfo=timezone.utc)
    else:
        dt = parse_datetime(str(value))
    if unit == "hour":
        return dt.strftime("%Y-%m-%dT%H:00:00")
    return dt.strftime("%Y-%m-%d")


def iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()
