from __future__ import annotations

import importlib

from fastapi.testclient import TestClient

from app.core import clickhouse
from app.core.config import settings

main = importlib.import_module("app.main")


def test_health_does_not_touch_storage(monkeypatch):
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")

    with TestClient(main.app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "pulse-analytics-backend", "environment": "test"}


def test_ready_with_relational_backend(session_factory):
    with TestClient(main.app) as client:
        response = client.get("/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "db": "ok"}


def test_ready_checks_clickhouse_when_it_serves_queries(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ANALYTICS_BACKEND", "clickhouse")
    monkeypatch.setattr(clickhouse, "ping", lambda: True)

    with TestClient(main.app) as client:
        response = client.get("/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "db": "ok", "clickhouse": "ok"}


def test_ready_reports_failed_clickhouse_ping(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ANALYTICS_BACKEND", "clickhouse")
    monkeypatch.setattr(clickhouse, "ping", lambda: False)

    with TestClient(main.app) as client:
        response = client.get("/ready")

    assert response.status_code == 503
    assert response.json() == {"status": "not_ready", "error": "ClickHouse ping failed"}
