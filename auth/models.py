"""
auth/models.py -- Domain dataclasses for identity and authorization entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
services own behavior; these classes only own domain shape.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Permission:
    """A (entity, action, access) capability triple.

    action is one of create/read/update/delete; access is "own" (caller must
    prove ownership of the record) or "any". Permissions attach to Roles only.
    """

    entity: str
    action: str
    access: str
    id: int | None = None
    description: str = ""


@dataclass
class Role:
    name: str
    id: int | None = None
    description: str = ""
    permissions: list[Permission] = field(default_factory=list)


@dataclass
class User:
    """An authenticated local account (the principal).

    username and email are stored lowercased so uniqueness is case-insensitive.
    roles is ordered by assignment; it is empty until the store loads it.
    The password hash lives in its own table and is never carried here.
    """

    username: str
    email: str
    id: int | None = None
    name: str | None = None
    image_url: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    roles: list[Role] = field(default_factory=list)


@dataclass
class Connection:
    """Link between a User and one external identity-provider account.

    (provider_name, provider_id) is globally unique.
    """

    provider_name: str
    provider_id: str
    user_id: int
    id: int | None = None
    created_at: str | None = None


@dataclass
class SessionRecord:
    id: str
    user_id: int
    expires_at: str
    remember: bool = False
    created_at: str | None = None


@dataclass
class VerificationSession:
    """Short-lived, single-purpose key/value bag (onboarding, password reset)."""

    id: str
    purpose: str
    data: dict
    expires_at: str
    created_at: str | None = None


@dataclass
class AuditLogEntry:
    user_id: int
    action: str
    entity: str
    id: int | None = None
    details: dict | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Profile:
    """Normalized identity returned by a provider after the code exchange.

    email is trimmed and lowercased. email_verified is True only when the
    provider vouched for the address.
    """

    provider_id: str
    email: str
    username: str | None = None
    name: str | None = None
    image_url: str | None = None
    email_verified: bool = False
