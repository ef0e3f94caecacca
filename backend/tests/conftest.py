from __future__ import annotations

import importlib
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.chat.tools import base
from app.core.config import settings
from app.models.models import EventData, Website, WebsiteEvent, WebsiteSession
from app.seed import writer

database = importlib.import_module("app.core.database")

WEBSITE_ID = "5801af32-ebe2-4273-9e58-89de8971a2fd"


@pytest.fixture
def session_factory(monkeypatch):
    """In-memory SQLite analytics store wired in as the relational backend."""
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    for model in (Website, WebsiteSession, WebsiteEvent, EventData):
        model.__table__.create(bind=engine)
    factory = sessionmaker(bind=engine, future=True)

    monkeypatch.setattr(database, "SessionLocal", factory)
    monkeypatch.setattr(settings, "ANALYTICS_BACKEND", "relational")
    monkeypatch.setattr(settings, "DEFAULT_WEBSITE_ID", "")
    monkeypatch.setattr(base, "_active_website_id", None)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def website_id(session_factory) -> str:
    db = session_factory()
    try:
        db.add(Website(website_id=WEBSITE_ID, name="Test Site", domain="test.example"))
        db.commit()
    finally:
        db.close()
    return WEBSITE_ID


def _noon_plus(minutes: int) -> datetime:
    return datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def shop(website_id):
    """
    Three sessions on 2025-07-01:
      buyer:   /home, /product, add_to_cart, checkout_success
      bounce:  /home
      browser: add_to_cart, then /home
    """
    batch = writer.SeedBatch(website_id)

    buyer = batch.add_session(_noon_plus(0), device="desktop", country="US")
    batch.add_event(buyer, _noon_plus(1), "/home")
    batch.add_event(buyer, _noon_plus(2), "/product")
    batch.add_event(buyer, _noon_plus(3), "/product", event_name="add_to_cart")
    batch.add_event(buyer, _noon_plus(4), "/checkout", event_name="checkout_success")

    bounce = batch.add_session(_noon_plus(0), device="mobile", country="DE")
    batch.add_event(bounce, _noon_plus(1), "/home")

    browser = batch.add_session(_noon_plus(0), device="mobile", country="US")
    batch.add_event(browser, _noon_plus(1), "/product", event_name="add_to_cart")
    batch.add_event(browser, _noon_plus(2), "/home")

    writer.write_batch(batch)
    return website_id
