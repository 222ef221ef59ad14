"""
auth/sessions.py -- Server-side sessions with "remember me" semantics.

A session is a row in the sessions table plus a signed token held by the
client (see auth/tokens.py). Both must validate: the signature catches
tampering, the row lets logout and password reset revoke a session before
its natural expiry.

Lifecycle:
  issue_session()   -- fresh random id every time (defeats session fixation)
  resolve_principal -- None for anything that is not a live, valid session
  destroy_session() -- idempotent
  purge_expired()   -- background housekeeping

Sessions are never extended or rotated implicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

from sqlalchemy.engine import Connection as SAConnection

from auth.context import RequestContext
from auth.errors import AlreadyAuthenticated, Unauthenticated
from auth.models import SessionRecord, User
from auth.store import UserStore
from auth.tokens import decode_session_token, encode_session_token, new_session_id, utcnow
from core.config import get_settings

logger = logging.getLogger("staffwise.sessions")


@dataclass(frozen=True)
class IssuedSession:
    """A newly issued session.

    max_age is None for a browser-session cookie (remember=False), else the
    cookie lifetime in seconds.
    """

    token: str
    record: SessionRecord
    max_age: int | None


class SessionManager:
    def __init__(
        self,
        store: UserStore,
        session_ttl_seconds: int | None = None,
        remember_session_seconds: int | None = None,
    ) -> None:
        cfg = get_settings()
        self.store = store
        self.session_ttl_seconds = session_ttl_seconds or cfg.session_ttl_seconds
        self.remember_session_seconds = remember_session_seconds or cfg.remember_session_seconds

    # ------------------------------------------------------------------
    # Issue / resolve / destroy
    # ------------------------------------------------------------------

    def issue_session(self, user_id: int, remember: bool = False, conn: SAConnection | None = None) -> IssuedSession:
        """Create a session row and its signed token.

        Pass `conn` to make the session part of a larger transaction (account
        linking, onboarding) so it only exists if everything else committed.
        """
        lifetime = self.remember_session_seconds if remember else self.session_ttl_seconds
        now = utcnow()
        expires = now + timedelta(seconds=lifetime)
        record = SessionRecord(
            id=new_session_id(),
            user_id=user_id,
            remember=remember,
            created_at=now.isoformat(),
            expires_at=expires.isoformat(),
        )
        self.store.create_session(record, conn=conn)
        token = encode_session_token(record.id, user_id, expires)
        return IssuedSession(token=token, record=record, max_age=lifetime if remember else None)

    def resolve_principal(self, token: str | None) -> int | None:
        """Return the user id behind a token, or None for the anonymous case.

        Rejects malformed, tampered and expired tokens, missing or expired
        session rows, rows that belong to another user than the token claims,
        and users that no longer exist.
        """
        if not token:
            return None
        payload = decode_session_token(token)
        if payload is None:
            return None
        record = self.store.get_session(payload["sid"])
        if record is None:
            return None
        if datetime.fromisoformat(record.expires_at) <= utcnow():
            self.store.delete_session(record.id)
            return None
        if str(record.user_id) != payload["sub"]:
            logger.warning("Session %s token/user mismatch -- rejecting", record.id[:8])
            return None
        if self.store.get_by_id(record.user_id) is None:
            self.store.delete_session(record.id)
            return None
        return record.user_id

    def destroy_session(self, token: str | None) -> None:
        """Delete the session behind a token. Absent or invalid sessions are a no-op."""
        if not token:
            return
        payload = decode_session_token(token)
        if payload is None:
            return
        self.store.delete_session(payload["sid"])

    def purge_expired(self) -> int:
        """Delete expired session rows and expired verification data."""
        purged = self.store.purge_expired_sessions()
        purged += self.store.purge_expired_verifications()
        return purged

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def require_user_id(self, ctx: RequestContext, redirect_to: str | None = None) -> int:
        """Return the user id or raise Unauthenticated pointing at /login.

        The login URL carries ?redirectTo= with the requested path so the user
        lands back where they started.
        """
        user_id = self.resolve_principal(ctx.session_token)
        if user_id is None:
            target = redirect_to if redirect_to is not None else ctx.full_path
            login_url = "/login"
            if target:
                login_url = f"/login?{urlencode({'redirectTo': target})}"
            raise Unauthenticated(redirect_to=login_url)
        return user_id

    def require_user(self, ctx: RequestContext) -> User:
        user_id = self.require_user_id(ctx)
        user = self.store.get_by_id(user_id)
        if user is None:
            raise Unauthenticated()
        return user

    def require_anonymous(self, ctx: RequestContext) -> None:
        if self.resolve_principal(ctx.session_token) is not None:
            raise AlreadyAuthenticated(redirect_to="/")


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, issued: IssuedSession) -> None:
    """Attach the session token as an httpOnly cookie.

    No max_age for non-remembered sessions: the browser drops the cookie when
    it closes, and the server-side expiry caps it regardless.
    """
    cfg = get_settings()
    response.set_cookie(
        key=cfg.session_cookie_name,
        value=issued.token,
        max_age=issued.max_age,
        httponly=True,
        samesite="lax",
        secure=cfg.secure_cookies,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(get_settings().session_cookie_name, path="/")
