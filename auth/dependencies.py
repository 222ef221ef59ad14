"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every route that needs an identity decision builds a RequestContext from the
incoming request and hands it to the SessionManager / permission guards. The
guards raise auth.errors exceptions; api/main.py turns those into redirects
(browser routes) or JSON errors (/api/ routes).

The session token is read from, in priority order:
  1. the session cookie -- set by the web UI login flow.
  2. Authorization: Bearer <token> -- API clients holding a session token.

Factories (require_user_with_role / _roles / _permission) return a dependency
so routes can declare their gate inline:

    @router.get("/php")
    async def php(user: User = Depends(require_user_with_roles(["admin", "phpAdmin"]))): ...

Layer rule: no imports from web/ or api/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Request

from auth import permissions
from auth.context import RequestContext
from auth.models import User
from auth.service import IdentityService
from auth.verification import VERIFICATION_COOKIE
from core.config import get_settings


def get_identity(request: Request) -> IdentityService:
    return request.app.state.identity


def session_token_from(request: Request) -> str | None:
    token: str | None = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_context(request: Request) -> RequestContext:
    """Snapshot the identity-relevant parts of the request."""
    return RequestContext(
        session_token=session_token_from(request),
        path=request.url.path,
        query_string=request.url.query,
        headers=dict(request.headers),
        verification_id=request.cookies.get(VERIFICATION_COOKIE),
    )


# ---------------------------------------------------------------------------
# Plain guards
# ---------------------------------------------------------------------------


def require_user_id(request: Request) -> int:
    return get_identity(request).sessions.require_user_id(get_context(request))


def require_user(request: Request) -> User:
    return get_identity(request).sessions.require_user(get_context(request))


def require_anonymous(request: Request) -> None:
    get_identity(request).sessions.require_anonymous(get_context(request))


# ---------------------------------------------------------------------------
# Role / permission factories
# ---------------------------------------------------------------------------


def require_user_with_role(role: str) -> Callable[[Request], User]:
    def dependency(request: Request) -> User:
        return permissions.require_user_with_role(get_identity(request).sessions, get_context(request), role)

    return dependency


def require_user_with_roles(roles: list[str]) -> Callable[[Request], User]:
    """Satisfied by ANY of the listed roles."""

    def dependency(request: Request) -> User:
        return permissions.require_user_with_roles(get_identity(request).sessions, get_context(request), roles)

    return dependency


def require_user_with_permission(permission: str) -> Callable[[Request], User]:
    """Gate on "action:entity[:access]". Ownership checks happen in the route.

    The string is parsed eagerly so a typo fails at import time, not on the
    first request.
    """
    permissions.parse_permission_string(permission)

    def dependency(request: Request) -> User:
        return permissions.require_user_with_permission(
            get_identity(request).sessions, get_context(request), permission
        )

    return dependency
