"""
auth/seed.py -- Seed the permission matrix and the built-in roles.

Permissions are the full cross product ENTITIES x ACTIONS x ACCESSES. Roles:

  admin               every permission
  idRequestAdmin      every idRequest permission
  incidentAdmin       every incident permission
  accessRequestAdmin  every accessRequest permission
  carPassAdmin        every carPassRequest permission
  phpAdmin            every php permission
  user                every "own" permission (default role for new accounts)

Idempotent: existing permissions are reused and existing roles are left
untouched, so running it twice is harmless.
"""

from __future__ import annotations

import logging

from auth.permissions import ACCESSES, ACTIONS
from auth.store import UserStore

logger = logging.getLogger("staffwise.auth.seed")

ENTITIES = (
    "country",
    "organ",
    "department",
    "location",
    "floor",
    "relationship",
    "incident",
    "incidentType",
    "actionType",
    "user",
    "role",
    "permission",
    "php",
    "accessRequest",
    "idRequest",
    "carPassRequest",
    "counter",
    "employee",
    "dependant",
    "spouse",
    "employeeIdRequest",
    "dependantIdRequest",
    "spouseIdRequest",
    "privateDriverIdRequest",
    "libraryUserIdRequest",
    "retireeIdRequest",
    "employeeCarPassRequest",
)

# role name -> entity whose permissions it receives (None = every permission)
_SECTION_ROLES = {
    "idRequestAdmin": "idRequest",
    "incidentAdmin": "incident",
    "accessRequestAdmin": "accessRequest",
    "carPassAdmin": "carPassRequest",
    "phpAdmin": "php",
}


def seed_roles_and_permissions(store: UserStore) -> list[str]:
    """Create missing permissions and roles. Returns the names of roles created."""
    ids: dict[tuple[str, str, str], int] = {}
    for entity in ENTITIES:
        for action in ACTIONS:
            for access in ACCESSES:
                ids[(entity, action, access)] = store.ensure_permission(entity, action, access)

    wanted: dict[str, list[int]] = {"admin": list(ids.values())}
    for role, section in _SECTION_ROLES.items():
        wanted[role] = [pid for (entity, _, _), pid in ids.items() if entity == section]
    wanted["user"] = [pid for (_, _, access), pid in ids.items() if access == "own"]

    created = []
    for name, permission_ids in wanted.items():
        if store.get_role(name) is not None:
            continue
        store.create_role(name, description=name, permission_ids=permission_ids)
        created.append(name)
    logger.info("Seeded %d permissions; created roles: %s", len(ids), ", ".join(created) or "none")
    return created
