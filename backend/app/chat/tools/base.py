"""
Shared pieces for chat tools: the tool wrapper, common input models and
website resolution.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Annotated, Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core import database
from app.core.config import settings
from app.core.time import today_utc
from app.models.models import Website
from app.queries.common import day_end, day_start, parse_day

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

DayString = Annotated[str, Field(pattern=r"^\d{4}-\d{2}-\d{2}$", description="Date (YYYY-MM-DD)")]


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    websiteId: Optional[str] = Field(default=None, description="Website UUID; defaults to the configured website")


class RecentWindowInput(ToolInput):
    """Trailing `days` window ending on `date_to` (today by default)."""

    days: int = Field(default=7, ge=1, description="Number of days to analyze")
    date_from: Optional[DayString] = None
    date_to: Optional[DayString] = None

    def window(self) -> tuple[datetime, datetime]:
        end_day = parse_day(self.date_to) if self.date_to else today_utc()
        start_day = parse_day(self.date_from) if self.date_from else end_day - timedelta(days=self.days - 1)
        if end_day < start_day:
            raise ValueError("date_to must not be before date_from")
        return day_start(start_day), day_end(end_day)


class RangeInput(ToolInput):
    """Explicit inclusive `from`/`to` day range."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_: DayString = Field(alias="from", description="Start of time range (YYYY-MM-DD)")
    to: DayString = Field(description="End of time range (YYYY-MM-DD)")

    def window(self) -> tuple[datetime, datetime]:
        return _days(self.from_, self.to)


class PeriodComparisonInput(ToolInput):
    conversionEvent: str = Field(min_length=1, description="Name of the event considered a conversion")
    currentFrom: DayString = Field(description="Start of current period (YYYY-MM-DD)")
    currentTo: DayString = Field(description="End of current period (YYYY-MM-DD)")
    previousFrom: DayString = Field(description="Start of comparison period (YYYY-MM-DD)")
    previousTo: DayString = Field(description="End of comparison period (YYYY-MM-DD)")

    def windows(self) -> tuple[datetime, datetime, datetime, datetime]:
        current_start, current_end = _days(self.currentFrom, self.currentTo)
        previous_start, previous_end = _days(self.previousFrom, self.previousTo)
        return current_start, current_end, previous_start, previous_end


def _days(date_from: str, date_to: str) -> tuple[datetime, datetime]:
    start_day: date = parse_day(date_from)
    end_day: date = parse_day(date_to)
    if end_day < start_day:
        raise ValueError("end date must not be before start date")
    return day_start(start_day), day_end(end_day)


def first_website_id() -> Optional[str]:
    db = database.SessionLocal()
    try:
        website = (
            db.query(Website)
            .filter(Website.deleted_at.is_(None))
            .order_by(Website.created_at.asc())
            .first()
        )
        return str(website.website_id) if website else None
    finally:
        db.close()


# Website chosen with set-active-website; process-wide, shared by every conversation.
_active_website_id: Optional[str] = None


def get_active_website_id() -> Optional[str]:
    return _active_website_id


def set_active_website_id(website_id: Optional[str]) -> None:
    global _active_website_id
    _active_website_id = website_id


def resolve_website_id(website_id: Optional[str] = None) -> str:
    """
    Explicit id if it looks like a UUID, then the active website, then
    DEFAULT_WEBSITE_ID, then the oldest non-deleted website (which becomes
    the active one).
    """
    candidate = str(website_id or "").strip()
    if candidate:
        if UUID_PATTERN.match(candidate):
            return candidate
        logger.warning("Ignoring website id that is not a UUID: %r", candidate)

    if _active_website_id:
        return _active_website_id

    default_id = str(settings.DEFAULT_WEBSITE_ID or "").strip()
    if default_id:
        return default_id

    fallback = first_website_id()
    if fallback:
        set_active_website_id(fallback)
        return fallback
    raise ValueError("No website ID available. Pass websiteId or configure DEFAULT_WEBSITE_ID.")


@dataclass(frozen=True)
class ChatTool:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Callable[..., Any]
    needs_website: bool = True

    def execute(self, raw: Optional[Mapping[str, Any]] = None) -> Any:
        """Validate `raw`, resolve the website and run the handler.

        Raises pydantic.ValidationError for malformed input.
        """
        params = self.input_model.model_validate(dict(raw or {}))
        if not self.needs_website:
            return self.handler(params)
        website_id = resolve_website_id(getattr(params, "websiteId", None))
        logger.debug("tool %s for website %s", self.name, website_id)
        return self.handler(params, website_id)

    def openai_spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(by_alias=True),
            },
        }
