"""Database models."""
from app.models.models import (
    EVENT_TYPE,
    Website,
    WebsiteSession,
    WebsiteEvent,
    EventData,
)

__all__ = [
    "EVENT_TYPE",
    "Website",
    "WebsiteSession",
    "WebsiteEvent",
    "EventData",
]
