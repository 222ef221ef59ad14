"""
auth/verification.py -- Short-lived verification state.

Two related mechanisms:

  One-time codes (prepare_verification / verify_code):
      A 6-digit code emailed to the user for signup ("onboarding") or password
      reset ("reset-password"). Stored hashed per (type, target); a new request
      replaces the previous code. A successful check deletes it, and so do
      MAX_CODE_ATTEMPTS wrong guesses.

  VerificationSessionStore:
      A server-side key/value bag keyed by an unguessable id. The browser only
      holds the id (in the "verification" cookie). Used to hand data from one
      step of a flow to the next: the verified onboarding email, the username
      whose password is being reset, or the provider profile awaiting
      onboarding. Each bag is single-purpose and single-use: consume() deletes
      it atomically, so two racing requests cannot both use it.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection as SAConnection

from auth.models import VerificationSession
from auth.store import UserStore
from auth.tokens import codes_match, generate_code, hash_code, utcnow
from core.config import get_settings

logger = logging.getLogger("staffwise.verification")

VERIFICATION_COOKIE = "verification"

# Verification types (one-time codes)
ONBOARDING = "onboarding"
RESET_PASSWORD = "reset-password"
VERIFICATION_TYPES = (ONBOARDING, RESET_PASSWORD)

# Wrong guesses allowed before a code is thrown away.
MAX_CODE_ATTEMPTS = 5

# VerificationSession purposes
PURPOSE_ONBOARDING = "onboarding"
PURPOSE_ONBOARDING_PROVIDER = "onboarding-provider"
PURPOSE_RESET_PASSWORD = "reset-password"

# Keys inside a VerificationSession bag
ONBOARDING_EMAIL_KEY = "onboardingEmail"
PREFILLED_PROFILE_KEY = "prefilledProfile"
PROVIDER_ID_KEY = "providerId"
PROVIDER_NAME_KEY = "providerName"
RESET_PASSWORD_USERNAME_KEY = "resetPasswordUsername"


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def prepare_verification(store: UserStore, type_: str, target: str, ttl_seconds: int | None = None) -> str:
    """Create (or replace) the code for (type, target) and return it in plain text.

    The plain code is only ever handed to the email transport.
    """
    if type_ not in VERIFICATION_TYPES:
        raise ValueError(f"Unknown verification type: {type_!r}")
    ttl = ttl_seconds or get_settings().verification_ttl_seconds
    code = generate_code()
    expires_at = (utcnow() + timedelta(seconds=ttl)).isoformat()
    store.upsert_verification(type_, target, hash_code(type_, target, code), expires_at)
    return code


def verify_code(store: UserStore, type_: str, target: str, code: str) -> bool:
    """Check a code and delete it on success. Expired or unknown codes fail.

    Each wrong guess is counted; after MAX_CODE_ATTEMPTS misses the code is
    deleted and the user has to request a new one.
    """
    found = store.get_verification(type_, target)
    if found is None:
        return False
    code_hash, expires_at = found
    if datetime.fromisoformat(expires_at) <= utcnow():
        store.delete_verification(type_, target)
        return False
    if not codes_match(code_hash, type_, target, code.strip()):
        if store.record_failed_verification(type_, target) >= MAX_CODE_ATTEMPTS:
            store.delete_verification(type_, target)
            logger.warning("Verification code for %s revoked after %d wrong attempts", type_, MAX_CODE_ATTEMPTS)
        return False
    # Only the request that actually deletes the row gets to use the code.
    return store.delete_verification(type_, target)


# ---------------------------------------------------------------------------
# Verification sessions
# ---------------------------------------------------------------------------


class VerificationSessionStore:
    """Create, read and consume VerificationSession bags.

    Usage:
        vs_id = verifications.create(PURPOSE_RESET_PASSWORD, {RESET_PASSWORD_USERNAME_KEY: "jdoe"})
        data = verifications.get(vs_id, PURPOSE_RESET_PASSWORD)      # peek, does not consume
        data = verifications.consume(vs_id, PURPOSE_RESET_PASSWORD)  # single use
    """

    def __init__(self, store: UserStore, ttl_seconds: int | None = None) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds or get_settings().verification_ttl_seconds

    def create(self, purpose: str, data: dict) -> str:
        vs = VerificationSession(
            id=secrets.token_urlsafe(32),
            purpose=purpose,
            data=dict(data),
            expires_at=(utcnow() + timedelta(seconds=self.ttl_seconds)).isoformat(),
        )
        self.store.create_verification_session(vs)
        logger.debug("Verification session created for purpose %s", purpose)
        return vs.id

    def get(self, vs_id: str | None, purpose: str) -> dict | None:
        """Return the bag for a live session of the given purpose, else None.

        Expired sessions are deleted on read. A purpose mismatch is treated as
        absent so a reset-password bag can never drive onboarding.
        """
        if not vs_id:
            return None
        vs = self.store.get_verification_session(vs_id)
        if vs is None:
            return None
        if datetime.fromisoformat(vs.expires_at) <= utcnow():
            self.store.delete_verification_session(vs_id)
            return None
        if vs.purpose != purpose:
            return None
        return vs.data

    def consume(self, vs_id: str | None, purpose: str, conn: SAConnection | None = None) -> dict | None:
        """Return the bag and delete it. Returns None if another request consumed it first."""
        data = self.get(vs_id, purpose)
        if data is None:
            return None
        if not self.store.delete_verification_session(vs_id, conn=conn):
            return None
        return data

    def destroy(self, vs_id: str | None) -> None:
        """Idempotent delete."""
        if vs_id:
            self.store.delete_verification_session(vs_id)
