"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' when the store answers
  - degraded status when the database ping fails
  - No authentication required
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_reports_database_failure(api_client, monkeypatch):
    """A failing ping degrades the status instead of erroring the request."""
    client, _ = api_client
    store = client.app.state.store

    def broken_ping():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "ping", broken_ping)
    data = client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"
