"""
tests/test_api_routes.py -- Integration tests for the /api/v1 identity endpoints.

Fixtures used (from conftest.py):
  api_client -- (TestClient, admin bearer token, admin user id)

Coverage:
  - POST /auth/login: token + cookie on success, generic 401 on failure
  - GET  /auth/me: roles and flattened permission strings
  - GET  /auth/providers: public
  - Connections: list and IDOR-guarded delete
  - Users: create (audited), conflict, list, own vs any read
  - PUT /users/{id}/roles: admin only, self-demotion blocked, audited
  - GET /roles and /audit-logs gated by permission / role
"""

from __future__ import annotations

import pytest


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _login(client, username: str, password: str) -> str:
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()["access_token"]


@pytest.fixture(scope="module")
def plain_user(api_client):
    """A second, non-admin account created through the API."""
    client, token, _ = api_client
    resp = client.post(
        "/api/v1/users",
        json={"username": "apiplain", "email": "apiplain@example.org", "password": "password123"},
        headers=_auth(token),
    )
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["id"]
    return user_id, _login(client, "apiplain", "password123")


# ---------------------------------------------------------------------------
# Login / me
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_returns_token_and_cookie(self, api_client) -> None:
        client, _, admin_id = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "TestAdmin", "password": "testpass123"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["id"] == admin_id
        assert "session" in resp.cookies
        assert resp.headers["cache-control"] == "no-store"
        client.cookies.clear()

    def test_bad_credentials(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "testadmin", "password": "wrongpass1"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_invalid_body_is_422(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "x"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_logout_revokes_token(self, api_client) -> None:
        client, _, _ = api_client
        token = _login(client, "testadmin", "testpass123")
        assert client.get("/api/v1/auth/me", headers=_auth(token)).status_code == 200
        assert client.post("/api/v1/auth/logout", headers=_auth(token)).status_code == 200
        assert client.get("/api/v1/auth/me", headers=_auth(token)).status_code == 401


class TestMe:
    def test_me_lists_roles_and_permissions(self, api_client) -> None:
        client, token, _ = api_client
        body = client.get("/api/v1/auth/me", headers=_auth(token)).json()
        assert body["username"] == "testadmin"
        assert body["roles"] == ["admin", "user"]
        assert "delete:user:any" in body["permissions"]
        assert body["permissions"] == sorted(body["permissions"])

    def test_providers_public(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert resp.json() == [{"name": "github", "label": "GitHub"}]


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnections:
    def test_delete_own_connection(self, api_client) -> None:
        client, token, admin_id = api_client
        store = client.app.state.user_store
        conn = store.create_connection("github", "api-gh-1", admin_id)
        listed = client.get("/api/v1/auth/connections", headers=_auth(token)).json()
        assert [c["provider_id"] for c in listed] == ["api-gh-1"]
        assert client.delete(f"/api/v1/auth/connections/{conn.id}", headers=_auth(token)).status_code == 204
        assert client.get("/api/v1/auth/connections", headers=_auth(token)).json() == []

    def test_cannot_delete_someone_elses_connection(self, api_client, plain_user) -> None:
        client, token, _ = api_client
        plain_id, _ = plain_user
        store = client.app.state.user_store
        conn = store.create_connection("github", "api-gh-2", plain_id)
        resp = client.delete(f"/api/v1/auth/connections/{conn.id}", headers=_auth(token))
        assert resp.status_code == 404
        assert store.get_connection("github", "api-gh-2") is not None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    def test_create_user_audited(self, api_client) -> None:
        client, token, admin_id = api_client
        resp = client.post(
            "/api/v1/users",
            json={"username": "ApiNew", "email": "apinew@example.org", "roles": ["incidentAdmin"]},
            headers=_auth(token),
        )
        assert resp.status_code == 201
        assert resp.json()["username"] == "apinew"
        assert resp.json()["roles"] == ["incidentAdmin"]
        logs = client.get(f"/api/v1/audit-logs?user_id={admin_id}", headers=_auth(token)).json()
        assert logs[0]["action"] == "CREATE"
        assert logs[0]["details"]["user_id"] == resp.json()["id"]

    def test_duplicate_user_conflict(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post(
            "/api/v1/users",
            json={"username": "testadmin", "email": "another@example.org"},
            headers=_auth(token),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_unknown_role_rejected(self, api_client) -> None:
        client, token, _ = api_client
        resp = client.post(
            "/api/v1/users",
            json={"username": "roleless", "email": "roleless@example.org", "roles": ["superuser"]},
            headers=_auth(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_role"

    def test_plain_user_cannot_create_or_list(self, api_client, plain_user) -> None:
        client, _, _ = api_client
        _, plain_token = plain_user
        resp = client.post(
            "/api/v1/users",
            json={"username": "sneaky", "email": "sneaky@example.org"},
            headers=_auth(plain_token),
        )
        assert resp.status_code == 403
        assert client.get("/api/v1/users", headers=_auth(plain_token)).status_code == 403

    def test_read_own_record_only(self, api_client, plain_user) -> None:
        client, _, admin_id = api_client
        plain_id, plain_token = plain_user
        assert client.get(f"/api/v1/users/{plain_id}", headers=_auth(plain_token)).status_code == 200
        assert client.get(f"/api/v1/users/{admin_id}", headers=_auth(plain_token)).status_code == 403

    def test_admin_reads_anyone(self, api_client, plain_user) -> None:
        client, token, _ = api_client
        plain_id, _ = plain_user
        assert client.get(f"/api/v1/users/{plain_id}", headers=_auth(token)).json()["username"] == "apiplain"
        assert client.get("/api/v1/users/999999", headers=_auth(token)).status_code == 404
        usernames = [u["username"] for u in client.get("/api/v1/users", headers=_auth(token)).json()]
        assert "testadmin" in usernames and "apiplain" in usernames


class TestRoles:
    def test_set_roles(self, api_client, plain_user) -> None:
        client, token, admin_id = api_client
        plain_id, _ = plain_user
        resp = client.put(
            f"/api/v1/users/{plain_id}/roles",
            json={"roles": ["carPassAdmin", "user", "user"]},
            headers=_auth(token),
        )
        assert resp.status_code == 200
        assert resp.json()["roles"] == ["carPassAdmin", "user"]
        entry = client.get(f"/api/v1/audit-logs?user_id={admin_id}&limit=1", headers=_auth(token)).json()[0]
        assert (entry["action"], entry["entity"]) == ("UPDATE", "UserRoles")
        assert entry["details"]["before"] == ["user"]

    def test_self_demotion_blocked(self, api_client) -> None:
        client, token, admin_id = api_client
        resp = client.put(f"/api/v1/users/{admin_id}/roles", json={"roles": ["user"]}, headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_demotion"

    def test_non_admin_cannot_set_roles(self, api_client, plain_user) -> None:
        client, _, admin_id = api_client
        _, plain_token = plain_user
        resp = client.put(f"/api/v1/users/{admin_id}/roles", json={"roles": ["user"]}, headers=_auth(plain_token))
        assert resp.status_code == 403

    def test_list_roles(self, api_client) -> None:
        client, token, _ = api_client
        roles = {r["name"]: r for r in client.get("/api/v1/roles", headers=_auth(token)).json()}
        assert set(roles) >= {"admin", "user", "phpAdmin"}
        assert len(roles["phpAdmin"]["permissions"]) == 8

    def test_audit_logs_admin_only(self, api_client, plain_user) -> None:
        client, _, _ = api_client
        _, plain_token = plain_user
        assert client.get("/api/v1/audit-logs", headers=_auth(plain_token)).status_code == 403
