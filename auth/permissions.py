"""
auth/permissions.py -- Role and permission checks.

Two granularities:
  Roles       -- coarse gates on whole sections ("admin", "phpAdmin").
                 require_user_with_roles() is satisfied by ANY listed role.
  Permissions -- (entity, action, access) triples attached to roles.
                 "own" access additionally requires the caller to own the
                 record; "any" does not.

A principal is never granted more than the union of its roles' permissions.
Predicates (user_has_roles, user_has_permission) are pure and never raise;
the require_* guards turn a deny into Forbidden (HTTP 403).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from auth.context import RequestContext
from auth.errors import Forbidden
from auth.models import User
from auth.sessions import SessionManager

ACTIONS = ("create", "read", "update", "delete")
ACCESSES = ("own", "any")


@dataclass(frozen=True)
class PermissionRequest:
    action: str
    entity: str
    access: tuple[str, ...] = ACCESSES


def parse_permission_string(permission: str) -> PermissionRequest:
    """Parse "action:entity[:access[,access]]", e.g. "update:incident:own,any".

    Omitting access means either own or any satisfies the request.
    """
    parts = permission.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid permission string: {permission!r}")
    action, entity = parts[0], parts[1]
    if action not in ACTIONS:
        raise ValueError(f"Invalid permission action: {action!r}")
    access: tuple[str, ...] = ACCESSES
    if len(parts) == 3 and parts[2]:
        access = tuple(a.strip() for a in parts[2].split(","))
        bad = [a for a in access if a not in ACCESSES]
        if bad:
            raise ValueError(f"Invalid permission access: {bad!r}")
    return PermissionRequest(action=action, entity=entity, access=access)


# ---------------------------------------------------------------------------
# Pure predicates
# ---------------------------------------------------------------------------


def user_has_roles(user: User | None, roles: Iterable[str]) -> bool:
    """True if the user holds at least one of the roles. No I/O."""
    if user is None:
        return False
    wanted = set(roles)
    return any(role.name in wanted for role in user.roles)


def user_has_role(user: User | None, role: str) -> bool:
    return user_has_roles(user, [role])


def user_has_permission(
    user: User | None,
    entity: str,
    action: str,
    owner_id: int | None = None,
    access: Iterable[str] = ACCESSES,
) -> bool:
    """True if any role grants (entity, action) at an allowed access level.

    "any" grants outright. "own" grants only when owner_id equals the user's
    id; a missing owner_id never satisfies "own".
    """
    if user is None:
        return False
    allowed = set(access)
    for role in user.roles:
        for perm in role.permissions:
            if perm.entity != entity or perm.action != action or perm.access not in allowed:
                continue
            if perm.access == "any":
                return True
            if perm.access == "own" and owner_id is not None and owner_id == user.id:
                return True
    return False


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_user_with_role(sessions: SessionManager, ctx: RequestContext, role: str) -> User:
    user = sessions.require_user(ctx)
    if not user_has_role(user, role):
        raise Forbidden(f"role: {role}")
    return user


def require_user_with_roles(sessions: SessionManager, ctx: RequestContext, roles: list[str]) -> User:
    """Require ANY of the roles (logical OR)."""
    user = sessions.require_user(ctx)
    if not user_has_roles(user, roles):
        raise Forbidden(f"roles: {', '.join(roles)}")
    return user


def require_user_with_permission(
    sessions: SessionManager,
    ctx: RequestContext,
    permission: str,
    owner_id: int | None = None,
) -> User:
    request = parse_permission_string(permission)
    user = sessions.require_user(ctx)
    if not user_has_permission(user, request.entity, request.action, owner_id=owner_id, access=request.access):
        raise Forbidden(f"permissions: {permission}")
    return user
