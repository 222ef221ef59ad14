"""
auth/errors.py -- Exception taxonomy for the identity subsystem.

Authentication/authorization failures are raised by guards and converted to
redirects or status codes by the exception handlers in api/main.py. They are
never rendered to the user as raw exceptions.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by auth/."""


class InvalidCredentials(AuthError):
    """Unknown identifier or wrong password. The two are never distinguished."""


class ProviderError(AuthError):
    """Identity provider exchange failed. The message is for logs only."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class Unauthenticated(AuthError):
    def __init__(self, redirect_to: str = "/login") -> None:
        super().__init__("Authentication required.")
        self.redirect_to = redirect_to


class AlreadyAuthenticated(AuthError):
    def __init__(self, redirect_to: str = "/") -> None:
        super().__init__("Already authenticated.")
        self.redirect_to = redirect_to


class Forbidden(AuthError):
    status_code = 403

    def __init__(self, required: str) -> None:
        super().__init__(f"Unauthorized: required {required}")
        self.required = required


class CsrfMismatch(AuthError):
    pass


class BotSuspected(AuthError):
    pass


class NotFound(AuthError):
    status_code = 404


class StorageConflict(AuthError):
    """A unique constraint rejected an insert because a concurrent writer won."""


class AuditWriteFailure(AuthError):
    """The audit record could not be written; the enclosing operation must abort."""
