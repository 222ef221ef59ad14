"""
tests/conftest.py -- Shared test fixtures for Staffwise tests.

This module provides:
  - make_store(): isolated named shared-memory UserStore, roles seeded
  - make_user(): create a user with a password and roles in one call
  - FakeProvider: IdentityProvider double -- no network, scripted profiles
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - web / api_client: TestClient with follow_redirects=False

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any app import: get_settings() is
cached on first call, and TestClient sends Host: testserver.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Optional

# CRITICAL: Set env before any auth/core import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.models import Profile, User
from auth.providers import ProviderRegistry
from auth.seed import seed_roles_and_permissions
from auth.service import IdentityService
from auth.store import UserStore
from auth.tokens import hash_password
from core.mailer import LoggingEmailTransport

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(name: Optional[str] = None) -> UserStore:
    """Create an isolated named shared-memory UserStore with roles seeded."""
    name = name or uuid.uuid4().hex
    store = UserStore(db_url=f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")
    seed_roles_and_permissions(store)
    return store


def make_user(
    store: UserStore,
    username: str,
    password: Optional[str] = "password123",
    roles: tuple[str, ...] = ("user",),
    email: Optional[str] = None,
) -> int:
    user = User(username=username, email=email or f"{username}@example.org", name=username.title())
    return store.create_user(user, password_hash=hash_password(password) if password else None, role_names=roles)


# ---------------------------------------------------------------------------
# Identity provider double
# ---------------------------------------------------------------------------


class FakeProvider:
    """Scripted IdentityProvider: set .profile or .error before the callback."""

    def __init__(self, name: str = "github", label: str = "GitHub") -> None:
        self.name = name
        self.label = label
        self.profile: Optional[Profile] = None
        self.error: Optional[Exception] = None
        self.exchanges = 0

    async def authorize_redirect(self, request, redirect_uri: str):
        return RedirectResponse(f"https://provider.example/authorize?redirect_uri={redirect_uri}", status_code=302)

    async def exchange(self, request) -> Profile:
        self.exchanges += 1
        if self.error is not None:
            raise self.error
        if self.profile is None:
            raise ValueError("no profile scripted")
        return self.profile


def make_identity(store: UserStore, provider: Optional[FakeProvider] = None) -> IdentityService:
    registry = ProviderRegistry()
    registry.register(provider or FakeProvider())
    return IdentityService(store, registry, LoggingEmailTransport())


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def identity(store: UserStore, provider: FakeProvider) -> IdentityService:
    return make_identity(store, provider)


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def _patch_lifespan(identity: IdentityService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = identity.store
        app.state.identity = identity
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def csrf_token(client: TestClient) -> str:
    """Fetch the session's CSRF token from the public landing loader."""
    return client.get("/").json()["csrf"]


def login(client: TestClient, username: str, password: str = "password123", **extra) -> object:
    data = {"csrf": csrf_token(client), "username": username, "password": password, **extra}
    return client.post("/login", data=data)


@pytest.fixture(scope="module")
def web_app() -> Generator[tuple[TestClient, IdentityService, FakeProvider], None, None]:
    """Yield (client, identity, provider) for web route integration tests.

    follow_redirects=False is essential: we assert on redirect *locations*
    (e.g. 302 to /login), which are invisible once the client follows them.
    """
    provider = FakeProvider()
    store = make_store()
    identity = make_identity(store, provider)
    app.router.lifespan_context = _patch_lifespan(identity)
    limiter.reset()

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, identity, provider

    store.close()


@pytest.fixture
def web(web_app) -> tuple[TestClient, IdentityService, FakeProvider]:
    """Per-test view of web_app with a clean cookie jar and provider script."""
    client, identity, provider = web_app
    client.cookies.clear()
    provider.profile = None
    provider.error = None
    limiter.reset()
    return client, identity, provider


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The admin logs in through the real login endpoint; the returned session
    token is sent as a Bearer header by the tests.
    """
    store = make_store()
    admin_id = make_user(store, "testadmin", "testpass123", roles=("admin", "user"))
    identity = make_identity(store)
    app.router.lifespan_context = _patch_lifespan(identity)
    limiter.reset()

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        resp = client.post("/api/v1/auth/login", json={"username": "testadmin", "password": "testpass123"})
        token = resp.json()["access_token"]
        client.cookies.clear()
        yield client, token, admin_id

    store.close()
