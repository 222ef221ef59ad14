"""
auth/tokens.py -- Password hashing, session-token signing and one-time codes.

Security design decisions:
  Session tokens: python-jose with HS256. A token carries only the session id
       (sid), the user id (sub) and expiry (exp). The server-side session row is
       the source of truth; the signature makes tampering detectable before any
       DB lookup. Verification returns None on any failure.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_with_password() so response time does not
       reveal whether a username exists [C1].

  One-time codes: 6 digits from secrets. We store HMAC-SHA256(SECRET_KEY, code)
       scoped by (type, target) so a leaked DB does not leak live codes.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidCredentials
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("staffwise.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes; the form models cap passwords well
    below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("staffwise_timing_dummy")


# ---------------------------------------------------------------------------
# Password authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_with_password(store: UserStore, identifier: str, password: str) -> User:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username / no password row: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success. Raises InvalidCredentials on any failure,
    with no hint of which check failed.
    """
    user = store.get_by_username(identifier)
    hashed = store.get_password_hash(user.id) if user is not None else None
    if user is None or hashed is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()
    if not verify_password(password, hashed):
        raise InvalidCredentials()
    return user


# ---------------------------------------------------------------------------
# Session token encode / decode
# ---------------------------------------------------------------------------


def encode_session_token(session_id: str, user_id: int, expires_at: datetime) -> str:
    payload = {
        "sid": session_id,
        "sub": str(user_id),
        "exp": expires_at,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict | None:
    """Decode and verify a session token. Returns the payload or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as anonymous.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("sid"), str) or not str(payload.get("sub", "")).isdigit():
        return None
    return payload


def new_session_id() -> str:
    """32 random bytes, url-safe. Never derived from anything the client sent."""
    return secrets.token_urlsafe(32)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def hash_code(type_: str, target: str, code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, type:target:code) as hex.

    Binding type and target into the MAC means a code issued for one purpose
    or address cannot be replayed for another.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        f"{type_}:{target}:{code}".encode(),
        hashlib.sha256,
    ).hexdigest()


def codes_match(expected_hash: str, type_: str, target: str, code: str) -> bool:
    return hmac.compare_digest(expected_hash, hash_code(type_, target, code))
