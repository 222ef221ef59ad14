"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status and version fields
  - No authentication required
  - Unknown /api/ paths keep the structured error envelope
"""

from __future__ import annotations


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status and version."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    client.cookies.clear()
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_unknown_api_path_uses_error_envelope(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"
