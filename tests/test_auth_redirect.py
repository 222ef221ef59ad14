"""
tests/test_auth_redirect.py -- Integration tests for the auth redirect chain.

These tests exercise the session guards end-to-end through the real ASGI
stack using the web fixture (follow_redirects=False). We assert on redirect
Location headers directly -- following the redirect would hide them.

Coverage:
  - Unauthenticated requests -> 302 /login?redirectTo={path}
  - Query strings survive the round trip inside redirectTo
  - Tampered / unknown session cookies are treated as anonymous
  - Authenticated requests pass through (200, no redirect)
  - /api/ paths answer 401 JSON instead of redirecting
  - Anonymous-only pages bounce signed-in users to /

Why integration tests over unit tests:
  The guard is a safety-critical path. Mocking it would confirm the mock
  works, not the real code. Running through ASGI catches regressions where the
  exception handler mapping is removed or the cookie name changes.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from conftest import login, make_user


def _redirect_target(location: str) -> str:
    return parse_qs(urlparse(location).query)["redirectTo"][0]


class TestAuthRedirectChain:
    @pytest.mark.parametrize("path", ["/profile", "/dashboard", "/dashboard/php", "/settings", "/docs"])
    def test_unauthenticated_redirects_to_login(self, web, path: str) -> None:
        client, _, _ = web
        resp = client.get(path)
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("/login?")
        assert _redirect_target(location) == path

    def test_redirect_to_keeps_query_string(self, web) -> None:
        client, _, _ = web
        resp = client.get("/profile?tab=connections")
        assert _redirect_target(resp.headers["location"]) == "/profile?tab=connections"

    def test_redirect_to_is_always_relative(self, web) -> None:
        """The guard only ever echoes the request path, never a host."""
        client, _, _ = web
        resp = client.get("/profile")
        target = _redirect_target(resp.headers["location"])
        assert target.startswith("/") and not target.startswith("//")

    def test_garbage_cookie_is_anonymous(self, web) -> None:
        client, _, _ = web
        client.cookies.set("session", "not-a-token")
        resp = client.get("/profile")
        assert resp.status_code == 302

    def test_revoked_session_is_anonymous(self, web) -> None:
        client, identity, _ = web
        uid = make_user(identity.store, "redirrevoked", "password123")
        login(client, "redirrevoked", "password123")
        identity.store.delete_user_sessions(uid)
        resp = client.get("/profile")
        assert resp.status_code == 302

    def test_authenticated_passes_through(self, web) -> None:
        client, identity, _ = web
        make_user(identity.store, "redirok", "password123")
        login(client, "redirok", "password123")
        resp = client.get("/profile")
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "redirok"
        assert resp.headers["cache-control"] == "no-store"

    def test_bearer_token_accepted(self, web) -> None:
        client, identity, _ = web
        uid = make_user(identity.store, "redirbearer", "password123")
        token = identity.sessions.issue_session(uid).token
        resp = client.get("/profile", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200

    def test_docs_available_when_authenticated(self, web) -> None:
        client, identity, _ = web
        make_user(identity.store, "redirdocs", "password123")
        login(client, "redirdocs", "password123")
        assert client.get("/docs").status_code == 200


class TestApiAuth:
    def test_api_unauthenticated_is_401_json(self, web) -> None:
        client, _, _ = web
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestAnonymousOnly:
    @pytest.mark.parametrize("path", ["/login", "/signup", "/forgot-password"])
    def test_signed_in_user_bounced_home(self, web, path: str) -> None:
        client, identity, _ = web
        username = "anon" + path.strip("/").replace("-", "")[:10]
        make_user(identity.store, username, "password123")
        login(client, username, "password123")
        resp = client.get(path)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_untrusted_host_rejected(self, web) -> None:
        client, _, _ = web
        resp = client.get("/", headers={"Host": "evil.example"})
        assert resp.status_code == 400


def test_landing_is_public(web) -> None:
    client: TestClient = web[0]
    data = client.get("/").json()
    assert data["user"] is None
    assert data["csrf"]
