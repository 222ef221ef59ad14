"""
auth/service.py -- IdentityService: the flows built on top of the components.

One instance lives on app.state.identity. It composes the store, session
manager, audit log, verification store, provider registry and account linker
and exposes the end-to-end operations the routes call: password login,
logout, emailed verification codes, onboarding (password and provider) and
password reset.

Every flow that writes more than one row runs in a single transaction and
writes its audit record inside it: if the audit row fails, nothing commits.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditAction, AuditLog
from auth.context import RequestContext
from auth.errors import StorageConflict
from auth.linking import AccountLinker, LinkOutcome
from auth.models import Profile, User
from auth.providers import ProviderRegistry
from auth.sessions import IssuedSession, SessionManager
from auth.store import UserStore
from auth.tokens import authenticate_with_password, hash_password
from auth.verification import (
    ONBOARDING,
    ONBOARDING_EMAIL_KEY,
    PREFILLED_PROFILE_KEY,
    PROVIDER_ID_KEY,
    PROVIDER_NAME_KEY,
    PURPOSE_ONBOARDING,
    PURPOSE_ONBOARDING_PROVIDER,
    PURPOSE_RESET_PASSWORD,
    RESET_PASSWORD,
    RESET_PASSWORD_USERNAME_KEY,
    VerificationSessionStore,
    prepare_verification,
    verify_code,
)
from core.mailer import EmailTransport

logger = logging.getLogger("staffwise.auth.service")

DEFAULT_ROLE = "user"


class IdentityService:
    def __init__(self, store: UserStore, providers: ProviderRegistry, mailer: EmailTransport) -> None:
        self.store = store
        self.providers = providers
        self.mailer = mailer
        self.audit = AuditLog(store)
        self.sessions = SessionManager(store)
        self.verifications = VerificationSessionStore(store)
        self.linker = AccountLinker(store, self.sessions, self.audit, self.verifications)

    # ------------------------------------------------------------------
    # Password login / logout
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, remember: bool = False) -> IssuedSession:
        """Authenticate and open a session. Raises InvalidCredentials."""
        user = authenticate_with_password(self.store, identifier, password)
        return self.handle_new_session(user.id, remember, {"method": "password"})

    def handle_new_session(self, user_id: int, remember: bool, details: dict | None = None) -> IssuedSession:
        """Issue a session and record LOGIN atomically."""
        with self.store.transaction() as conn:
            issued = self.sessions.issue_session(user_id, remember=remember, conn=conn)
            self.audit.record(user_id, AuditAction.LOGIN, "User", details, conn=conn)
        return issued

    def logout(self, ctx: RequestContext) -> None:
        """Record LOGOUT (when there is a live session) and destroy the session.

        Safe to call twice: the second call finds no session and does nothing.
        """
        user_id = self.sessions.resolve_principal(ctx.session_token)
        if user_id is not None:
            self.audit.record(user_id, AuditAction.LOGOUT, "User")
        self.sessions.destroy_session(ctx.session_token)

    # ------------------------------------------------------------------
    # Provider callback
    # ------------------------------------------------------------------

    def link_profile(self, provider_name: str, profile: Profile, ctx: RequestContext) -> LinkOutcome:
        session_user_id = self.sessions.resolve_principal(ctx.session_token)
        return self.linker.link(provider_name, profile, session_user_id)

    # ------------------------------------------------------------------
    # Emailed one-time codes
    # ------------------------------------------------------------------

    def send_signup_code(self, email: str) -> None:
        email = email.strip().lower()
        code = prepare_verification(self.store, ONBOARDING, email)
        self.mailer.send(
            to=email,
            subject="Welcome to Staffwise",
            plain_text=f"Here's your code: {code}",
            html=f"Here's your code: <strong>{code}</strong>",
        )

    def send_reset_code(self, identifier: str) -> None:
        """Email a reset code if the username/email exists. Silent otherwise.

        The caller always shows the same "check your email" step so the form
        cannot be used to discover which accounts exist.
        """
        target = identifier.strip().lower()
        user = self._find_account(target)
        if user is None:
            logger.info("Password reset requested for unknown identifier")
            return
        code = prepare_verification(self.store, RESET_PASSWORD, target)
        self.mailer.send(
            to=user.email,
            subject="Staffwise Password Reset",
            plain_text=f"Here's your code: {code}",
            html=f"Here's your code: <strong>{code}</strong>",
        )

    def _find_account(self, identifier: str) -> User | None:
        return self.store.get_by_username(identifier) or self.store.get_by_email(identifier)

    def verify(self, type_: str, target: str, code: str) -> str | None:
        """Check a code and hand off to the next step via a VerificationSession.

        Returns the verification session id, or None if the code is invalid.
        """
        target = target.strip().lower()
        if not verify_code(self.store, type_, target, code):
            return None
        if type_ == ONBOARDING:
            return self.verifications.create(PURPOSE_ONBOARDING, {ONBOARDING_EMAIL_KEY: target})
        user = self._find_account(target)
        if user is None:
            return None
        return self.verifications.create(PURPOSE_RESET_PASSWORD, {RESET_PASSWORD_USERNAME_KEY: user.username})

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    def onboarding_email(self, vs_id: str | None) -> str | None:
        data = self.verifications.get(vs_id, PURPOSE_ONBOARDING)
        return data.get(ONBOARDING_EMAIL_KEY) if data else None

    def provider_onboarding_data(self, vs_id: str | None, provider_name: str) -> dict | None:
        """Return the onboarding bag for this provider, or None if absent/mismatched."""
        data = self.verifications.get(vs_id, PURPOSE_ONBOARDING_PROVIDER)
        if not data or data.get(PROVIDER_NAME_KEY) != provider_name:
            return None
        if not isinstance(data.get(ONBOARDING_EMAIL_KEY), str) or not isinstance(data.get(PROVIDER_ID_KEY), str):
            return None
        data.setdefault(PREFILLED_PROFILE_KEY, {})
        return data

    def complete_onboarding(
        self, vs_id: str, username: str, name: str, password: str, remember: bool = False
    ) -> IssuedSession | None:
        """Create a password account for the verified email and log it in.

        Returns None if the verification session is gone (expired or already
        used). Raises StorageConflict if the username or email was taken
        concurrently.
        """
        return self._register(
            vs_id,
            PURPOSE_ONBOARDING,
            username=username,
            name=name,
            remember=remember,
            password_hash=hash_password(password),
        )

    def complete_provider_onboarding(
        self, vs_id: str, provider_name: str, username: str, name: str, remember: bool = False
    ) -> IssuedSession | None:
        """Create an account plus its provider connection and log it in."""
        if self.provider_onboarding_data(vs_id, provider_name) is None:
            return None
        return self._register(
            vs_id,
            PURPOSE_ONBOARDING_PROVIDER,
            username=username,
            name=name,
            remember=remember,
            provider_name=provider_name,
        )

    def _register(
        self,
        vs_id: str,
        purpose: str,
        username: str,
        name: str,
        remember: bool,
        password_hash: str | None = None,
        provider_name: str | None = None,
    ) -> IssuedSession | None:
        try:
            with self.store.transaction() as conn:
                data = self.verifications.consume(vs_id, purpose, conn=conn)
                if data is None:
                    return None
                prefilled = data.get(PREFILLED_PROFILE_KEY) or {}
                user_id = self.store.create_user(
                    User(
                        username=username,
                        email=data[ONBOARDING_EMAIL_KEY],
                        name=name,
                        image_url=prefilled.get("image_url"),
                    ),
                    password_hash=password_hash,
                    role_names=(DEFAULT_ROLE,),
                    conn=conn,
                )
                if provider_name is not None:
                    self.store.create_connection(provider_name, data[PROVIDER_ID_KEY], user_id, conn=conn)
                issued = self.sessions.issue_session(user_id, remember=remember, conn=conn)
                self.audit.record(
                    user_id,
                    AuditAction.REGISTER,
                    "User",
                    {"provider": provider_name} if provider_name else None,
                    conn=conn,
                )
        except IntegrityError as exc:
            raise StorageConflict("username or email already registered") from exc
        return issued

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def reset_password_username(self, vs_id: str | None) -> str | None:
        data = self.verifications.get(vs_id, PURPOSE_RESET_PASSWORD)
        return data.get(RESET_PASSWORD_USERNAME_KEY) if data else None

    def reset_password(self, vs_id: str, password: str) -> bool:
        """Set a new password, revoke every existing session, record RESET_PASSWORD.

        Returns False when the verification session is gone or its user vanished.
        """
        username = self.reset_password_username(vs_id)
        user = self.store.get_by_username(username) if username else None
        if user is None:
            return False
        with self.store.transaction() as conn:
            if self.verifications.consume(vs_id, PURPOSE_RESET_PASSWORD, conn=conn) is None:
                return False
            self.store.set_password(user.id, hash_password(password), conn=conn)
            self.store.delete_user_sessions(user.id, conn=conn)
            self.audit.record(user.id, AuditAction.RESET_PASSWORD, "User", conn=conn)
        return True
