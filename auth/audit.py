"""
auth/audit.py -- Append-only audit trail of security-relevant actions.

The audit trail is a compliance record, not telemetry: if a row cannot be
written, record() raises AuditWriteFailure and the enclosing operation must
not proceed. When the caller passes its transaction `conn`, the audit row and
the audited change commit or roll back together.
"""

from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy.engine import Connection as SAConnection
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuditWriteFailure
from auth.models import AuditLogEntry
from auth.store import UserStore

logger = logging.getLogger("staffwise.audit")


class AuditAction(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    RESET_PASSWORD = "RESET_PASSWORD"
    CHANGE_PASSWORD = "CHANGE_PASSWORD"
    VERIFY_EMAIL = "VERIFY_EMAIL"
    CONNECT = "CONNECT"


class AuditLog:
    def __init__(self, store: UserStore) -> None:
        self.store = store

    def record(
        self,
        user_id: int,
        action: AuditAction,
        entity: str,
        details: dict | None = None,
        conn: SAConnection | None = None,
    ) -> int:
        entry = AuditLogEntry(user_id=user_id, action=AuditAction(action).value, entity=entity, details=details)
        try:
            return self.store.insert_audit_log(entry, conn=conn)
        except SQLAlchemyError as exc:
            logger.exception("Audit write failed: user=%s action=%s entity=%s", user_id, entry.action, entity)
            raise AuditWriteFailure(f"could not record {entry.action} for user {user_id}") from exc
