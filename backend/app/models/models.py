"""
SQLAlchemy models for Pulse Analytics.

Rows are written by event ingestion (or the seed scripts); the query layer
only reads them.
"""
from sqlalchemy import (
    Column, Integer, String, Text, DECIMAL,
    ForeignKey, DateTime, CheckConstraint, Index
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base

# Native UUID on PostgreSQL, canonical 36-char text everywhere else.
UUIDColumn = String(36).with_variant(postgresql.UUID(as_uuid=False), "postgresql")

EVENT_TYPE = {
    "pageview": 1,
    "customEvent": 2,
}

DATA_TYPE = {
    "string": 1,
    "number": 2,
    "boolean": 3,
    "date": 4,
    "array": 5,
}


class Website(Base):
    """Tenant root: a tracked website."""
    __tablename__ = "website"

    website_id = Column(UUIDColumn, primary_key=True)
    name = Column(String(100), nullable=False)
    domain = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    sessions = relationship("WebsiteSession", back_populates="website")


class WebsiteSession(Base):
    """One browsing session."""
    __tablename__ = "session"

    session_id = Column(UUIDColumn, primary_key=True)
    website_id = Column(UUIDColumn, ForeignKey("website.website_id"), nullable=False)
    distinct_id = Column(String(50), nullable=True)
    browser = Column(String(20), nullable=True)
    os = Column(String(20), nullable=True)
    device = Column(String(20), nullable=True)
    screen = Column(String(11), nullable=True)
    language = Column(String(35), nullable=True)
    country = Column(String(2), nullable=True)
    region = Column(String(20), nullable=True)
    city = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    website = relationship("Website", back_populates="sessions")
    events = relationship("WebsiteEvent", back_populates="session")

    __table_args__ = (
        Index("ix_session_website_created", "website_id", "created_at"),
    )


class WebsiteEvent(Base):
    """A pageview (event_type=1) or custom event (event_type=2)."""
    __tablename__ = "website_event"

    event_id = Column(UUIDColumn, primary_key=True)
    website_id = Column(UUIDColumn, ForeignKey("website.website_id"), nullable=False)
    session_id = Column(UUIDColumn, ForeignKey("session.session_id"), nullable=False)
    visit_id = Column(UUIDColumn, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    url_path = Column(String(500), nullable=False)
    url_query = Column(String(500), nullable=True)
    referrer_path = Column(String(500), nullable=True)
    referrer_domain = Column(String(500), nullable=True)
    page_title = Column(String(500), nullable=True)
    event_type = Column(Integer, nullable=False, default=EVENT_TYPE["pageview"])
    event_name = Column(String(50), nullable=True)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)

    session = relationship("WebsiteSession", back_populates="events")
    data = relationship("EventData", back_populates="event")

    __table_args__ = (
        CheckConstraint("event_type IN (1, 2)", name="valid_event_type"),
        Index("ix_website_event_website_created", "website_id", "created_at"),
        Index("ix_website_event_session", "session_id"),
        Index("ix_website_event_website_name", "website_id", "event_name"),
    )


class EventData(Base):
    """Key/value attribute attached to a WebsiteEvent. Append-only."""
    __tablename__ = "event_data"

    event_data_id = Column(UUIDColumn, primary_key=True)
    website_id = Column(UUIDColumn, ForeignKey("website.website_id"), nullable=False)
    website_event_id = Column(UUIDColumn, ForeignKey("website_event.event_id"), nullable=False)
    data_key = Column(String(500), nullable=False)
    string_value = Column(Text, nullable=True)
    number_value = Column(DECIMAL(19, 4), nullable=True)
    date_value = Column(DateTime(timezone=True), nullable=True)
    data_type = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    event = relationship("WebsiteEvent", back_populates="data")

    __table_args__ = (
        CheckConstraint("data_type BETWEEN 1 AND 5", name="valid_data_type"),
    )
