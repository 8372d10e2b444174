"""
tests/test_health.py -- Integration tests for GET /health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against a live engine
  - No authentication required
"""

from __future__ import annotations

from api.main import VERSION


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _ = api_client
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == VERSION
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without a session cookie or Bearer header."""
    client, _ = api_client
    client.cookies.clear()
    resp = client.get("/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
