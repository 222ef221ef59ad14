"""
auth/linking.py -- Reconcile a provider Profile with local accounts.

Runs only on a provider callback. The decision is an ordered list of rules,
first match wins:

  1. connection exists + session user      -> AlreadyLinkedSelf / AlreadyLinkedOther
  2. no connection     + session user      -> Linked (additive, no new session)
  3. connection exists + no session user   -> Resumed (login as the owner)
  4. no connection, no session, a user with
     the profile's verified email exists   -> MatchedByEmail (link + login)
  5. anything else                         -> NeedsOnboarding

Rule 1 never changes state, so a replayed callback cannot move a connection
to the replaying session's account, and replaying one's own callback is
idempotent.

Concurrency: two callbacks for the same (provider, provider_id) may race. The
connections UNIQUE constraint lets exactly one insert win; the loser gets
StorageConflict, re-reads the now-existing connection and re-runs the rules,
landing on rule 1 or 3. Multi-row effects (connection + session + audit) run
in one transaction, so a failure leaves no partial state behind.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Callable, Union

from auth.audit import AuditAction, AuditLog
from auth.errors import StorageConflict
from auth.models import Connection, Profile, User
from auth.sessions import IssuedSession, SessionManager
from auth.store import UserStore
from auth.verification import (
    ONBOARDING_EMAIL_KEY,
    PREFILLED_PROFILE_KEY,
    PROVIDER_ID_KEY,
    PROVIDER_NAME_KEY,
    PURPOSE_ONBOARDING_PROVIDER,
    VerificationSessionStore,
)

logger = logging.getLogger("staffwise.auth.linking")

_MAX_ATTEMPTS = 3
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def sanitize_username(raw: str | None) -> str | None:
    """Turn a provider display name into a username suggestion.

    Non-alphanumerics become "_", then lowercase, cut to 20, pad with "_" to 3.
    """
    if raw is None:
        return None
    return _NON_ALNUM.sub("_", raw).lower()[:20].ljust(3, "_")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlreadyLinkedSelf:
    connection: Connection


@dataclass(frozen=True)
class AlreadyLinkedOther:
    connection: Connection


@dataclass(frozen=True)
class Linked:
    connection: Connection


@dataclass(frozen=True)
class Resumed:
    connection: Connection
    session: IssuedSession


@dataclass(frozen=True)
class MatchedByEmail:
    connection: Connection
    session: IssuedSession


@dataclass(frozen=True)
class NeedsOnboarding:
    verification_id: str
    provider_name: str
    email: str
    suggested_username: str | None


LinkOutcome = Union[AlreadyLinkedSelf, AlreadyLinkedOther, Linked, Resumed, MatchedByEmail, NeedsOnboarding]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkContext:
    provider_name: str
    profile: Profile
    session_user_id: int | None
    existing: Connection | None
    email_match: User | None = None


@dataclass(frozen=True)
class Rule:
    name: str
    applies: Callable[[LinkContext], bool]


RULES: tuple[Rule, ...] = (
    Rule("already_linked", lambda c: c.existing is not None and c.session_user_id is not None),
    Rule("link_to_session", lambda c: c.existing is None and c.session_user_id is not None),
    Rule("resume", lambda c: c.existing is not None and c.session_user_id is None),
    Rule(
        "match_by_email",
        lambda c: c.existing is None
        and c.session_user_id is None
        and c.email_match is not None
        and c.profile.email_verified,
    ),
    Rule("onboarding", lambda c: True),
)


def decide(ctx: LinkContext) -> str:
    """Return the name of the first rule that applies. Pure."""
    for rule in RULES:
        if rule.applies(ctx):
            return rule.name
    raise AssertionError("the onboarding rule always applies")


# ---------------------------------------------------------------------------
# Linker
# ---------------------------------------------------------------------------


class AccountLinker:
    def __init__(
        self,
        store: UserStore,
        sessions: SessionManager,
        audit: AuditLog,
        verifications: VerificationSessionStore,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.audit = audit
        self.verifications = verifications
        self._appliers: dict[str, Callable[[LinkContext], LinkOutcome]] = {
            "already_linked": self._already_linked,
            "link_to_session": self._link_to_session,
            "resume": self._resume,
            "match_by_email": self._match_by_email,
            "onboarding": self._onboarding,
        }

    def link(self, provider_name: str, profile: Profile, session_user_id: int | None) -> LinkOutcome:
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            ctx = self._context(provider_name, profile, session_user_id)
            rule = decide(ctx)
            try:
                return self._appliers[rule](ctx)
            except StorageConflict:
                # Someone else linked this identity between our read and write.
                logger.info(
                    "Concurrent link of %s:%s detected (attempt %d) -- re-reading",
                    provider_name,
                    profile.provider_id,
                    attempt,
                )
        raise StorageConflict(f"could not settle link for {provider_name}:{profile.provider_id}")

    def _context(self, provider_name: str, profile: Profile, session_user_id: int | None) -> LinkContext:
        existing = self.store.get_connection(provider_name, profile.provider_id)
        email_match = None
        if existing is None and session_user_id is None and profile.email:
            email_match = self.store.get_by_email(profile.email)
        return LinkContext(
            provider_name=provider_name,
            profile=profile,
            session_user_id=session_user_id,
            existing=existing,
            email_match=email_match,
        )

    # ------------------------------------------------------------------
    # Appliers
    # ------------------------------------------------------------------

    def _already_linked(self, ctx: LinkContext) -> LinkOutcome:
        if ctx.existing.user_id == ctx.session_user_id:
            return AlreadyLinkedSelf(ctx.existing)
        return AlreadyLinkedOther(ctx.existing)

    def _link_to_session(self, ctx: LinkContext) -> LinkOutcome:
        with self.store.transaction() as conn:
            connection = self.store.create_connection(
                ctx.provider_name, ctx.profile.provider_id, ctx.session_user_id, conn=conn
            )
            self.audit.record(
                ctx.session_user_id,
                AuditAction.CONNECT,
                "Connection",
                {"provider": ctx.provider_name},
                conn=conn,
            )
        return Linked(connection)

    def _resume(self, ctx: LinkContext) -> LinkOutcome:
        owner = ctx.existing.user_id
        with self.store.transaction() as conn:
            issued = self.sessions.issue_session(owner, remember=True, conn=conn)
            self.audit.record(owner, AuditAction.LOGIN, "User", {"provider": ctx.provider_name}, conn=conn)
        return Resumed(ctx.existing, issued)

    def _match_by_email(self, ctx: LinkContext) -> LinkOutcome:
        user_id = ctx.email_match.id
        with self.store.transaction() as conn:
            connection = self.store.create_connection(ctx.provider_name, ctx.profile.provider_id, user_id, conn=conn)
            issued = self.sessions.issue_session(user_id, remember=True, conn=conn)
            self.audit.record(
                user_id,
                AuditAction.LOGIN,
                "User",
                {"provider": ctx.provider_name, "linked_by": "email"},
                conn=conn,
            )
        logger.info("Linked %s identity to existing user %s by verified email", ctx.provider_name, user_id)
        return MatchedByEmail(connection, issued)

    def _onboarding(self, ctx: LinkContext) -> LinkOutcome:
        profile = ctx.profile
        prefilled = asdict(profile)
        prefilled["username"] = sanitize_username(profile.username)
        vs_id = self.verifications.create(
            PURPOSE_ONBOARDING_PROVIDER,
            {
                ONBOARDING_EMAIL_KEY: profile.email,
                PREFILLED_PROFILE_KEY: prefilled,
                PROVIDER_ID_KEY: profile.provider_id,
                PROVIDER_NAME_KEY: ctx.provider_name,
            },
        )
        return NeedsOnboarding(
            verification_id=vs_id,
            provider_name=ctx.provider_name,
            email=profile.email,
            suggested_username=prefilled["username"],
        )
