"""
Persistence for generated analytics data.

Rows are plain dicts shaped like the ORM columns. Inserts go through
SQLAlchemy Core in fixed-size chunks so one statement never carries more
than `chunk_size` rows.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from app.core import database
from app.models.models import EVENT_TYPE, EventData, Website, WebsiteEvent, WebsiteSession

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1000

# Executemany inserts need every row to carry the same keys.
SESSION_ATTRS = ("distinct_id", "browser", "os", "device", "screen", "language", "country", "region", "city")
EVENT_ATTRS = (
    "url_query", "referrer_path", "referrer_domain", "page_title",
    "utm_source", "utm_medium", "utm_campaign",
)


def new_id() -> str:
    return str(uuid.uuid4())


def _only(attrs: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    unknown = set(attrs) - set(allowed)
    if unknown:
        raise ValueError(f"unknown columns: {sorted(unknown)}")
    return {name: attrs.get(name) for name in allowed}


@dataclass
class SeedBatch:
    """Sessions and events produced by one generator run."""

    website_id: str
    sessions: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    def add_session(self, created_at: datetime, session_id: Optional[str] = None, **attrs: Any) -> str:
        session_id = session_id or new_id()
        self.sessions.append({
            "session_id": session_id,
            "website_id": self.website_id,
            "created_at": created_at,
            **_only(attrs, SESSION_ATTRS),
        })
        return session_id

    def add_event(
        self,
        session_id: str,
        created_at: datetime,
        url_path: str = "/",
        event_name: Optional[str] = None,
        visit_id: Optional[str] = None,
        **attrs: Any,
    ) -> None:
        self.events.append({
            "event_id": new_id(),
            "website_id": self.website_id,
            "session_id": session_id,
            "visit_id": visit_id or session_id,
            "created_at": created_at,
            "url_path": url_path,
            "event_type": EVENT_TYPE["customEvent"] if event_name else EVENT_TYPE["pageview"],
            "event_name": event_name,
            **_only(attrs, EVENT_ATTRS),
        })


def insert_rows(db: Session, model, rows: list[dict[str, Any]], chunk_size: int = CHUNK_SIZE) -> int:
    written = 0
    for offset in range(0, len(rows), chunk_size):
        chunk = rows[offset:offset + chunk_size]
        db.execute(insert(model), chunk)
        written += len(chunk)
    return written


def ensure_website(db: Session, website_id: str, name: str = "Seed Website", domain: str = "example.com") -> Website:
    website = db.query(Website).filter(Website.website_id == website_id).first()
    if website is None:
        website = Website(website_id=website_id, name=name, domain=domain)
        db.add(website)
        db.flush()
        logger.info("Created website %s", website_id)
    return website


def write_batch(batch: SeedBatch, chunk_size: int = CHUNK_SIZE) -> dict[str, int]:
    """Insert a batch (creating the website if needed) and commit."""
    db = database.SessionLocal()
    try:
        ensure_website(db, batch.website_id)
        sessions = insert_rows(db, WebsiteSession, batch.sessions, chunk_size)
        events = insert_rows(db, WebsiteEvent, batch.events, chunk_size)
        db.commit()
        return {"sessions": sessions, "events": events}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def reset_range(website_id: str, start: datetime, end: datetime) -> dict[str, int]:
    """Delete a website's sessions created inside [start, end] and their events."""
    db = database.SessionLocal()
    try:
        in_range = (
            WebsiteSession.website_id == website_id,
            WebsiteSession.created_at >= start,
            WebsiteSession.created_at <= end,
        )
        session_ids = select(WebsiteSession.session_id).where(*in_range)
        event_ids = select(WebsiteEvent.event_id).where(
            WebsiteEvent.website_id == website_id,
            WebsiteEvent.session_id.in_(session_ids),
        )
        event_data = db.execute(
            delete(EventData).where(EventData.website_event_id.in_(event_ids))
        ).rowcount
        events = db.execute(
            delete(WebsiteEvent).where(
                WebsiteEvent.website_id == website_id,
                WebsiteEvent.session_id.in_(session_ids),
            )
        ).rowcount
        sessions = db.execute(delete(WebsiteSession).where(*in_range)).rowcount
        db.commit()
        return {"eventData": event_data, "websiteEvents": events, "sessions": sessions}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def clear_website(website_id: Optional[str] = None) -> dict[str, int]:
    """Delete analytics rows for one website, or for every website when None."""
    db = database.SessionLocal()
    try:
        deleted = {}
        for key, model in (("eventData", EventData), ("websiteEvents", WebsiteEvent), ("sessions", WebsiteSession)):
            stmt = delete(model)
            if website_id:
                stmt = stmt.where(model.website_id == website_id)
            deleted[key] = db.execute(stmt).rowcount
        db.commit()
        return deleted
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def count_rows(website_id: Optional[str] = None) -> dict[str, int]:
    db = database.SessionLocal()
    try:
        counts = {}
        for key, model in (("eventData", EventData), ("websiteEvents", WebsiteEvent), ("sessions", WebsiteSession)):
            query = db.query(model)
            if website_id:
                query = query.filter(model.website_id == website_id)
            counts[key] = query.count()
        return counts
    finally:
        db.close()
