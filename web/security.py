"""
web/security.py -- CSRF token and honeypot checks for form posts.

CSRF: a random token is kept in the signed Starlette session cookie
(SessionMiddleware) and must come back with every state-changing form post,
either as the "csrf" form field or the X-CSRF-Token header. GET loaders hand
the token to the client in their JSON payload.

Honeypot: forms carry a hidden "name__confirm" field that humans never fill.
A non-empty value marks the submission as a bot.

Both checks raise (CsrfMismatch / BotSuspected); api/main.py maps them to a
generic 400 so the response never explains which check tripped.
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping

from fastapi import Request

from auth.errors import BotSuspected, CsrfMismatch

CSRF_SESSION_KEY = "csrf"
CSRF_FORM_FIELD = "csrf"
CSRF_HEADER = "x-csrf-token"
HONEYPOT_FIELD = "name__confirm"


def get_csrf_token(request: Request) -> str:
    """Return the session's CSRF token, minting one on first use."""
    token = request.session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        request.session[CSRF_SESSION_KEY] = token
    return token


def validate_csrf(form: Mapping[str, str], headers: Mapping[str, str], expected: str | None) -> None:
    supplied = form.get(CSRF_FORM_FIELD) or headers.get(CSRF_HEADER) or ""
    if not expected or not supplied:
        raise CsrfMismatch("missing CSRF token")
    if not secrets.compare_digest(str(supplied), expected):
        raise CsrfMismatch("CSRF token mismatch")


def check_honeypot(form: Mapping[str, str]) -> None:
    if form.get(HONEYPOT_FIELD):
        raise BotSuspected("honeypot field filled")


async def read_protected_form(request: Request) -> dict[str, str]:
    """Read a form post after the CSRF and honeypot checks pass.

    Uploaded files are dropped; only string fields are returned.
    """
    raw = await request.form()
    form = {k: v for k, v in raw.items() if isinstance(v, str)}
    validate_csrf(form, request.headers, request.session.get(CSRF_SESSION_KEY))
    check_honeypot(form)
    return form
