"""Unit tests for auth/store.py -- UserStore persistence.

Covers:
- create_user lowercases username/email; lookups are case-insensitive
- duplicate username or email raises IntegrityError
- unknown role name raises ValueError and leaves no user behind
- roles load with their permissions
- connections are unique per (provider, provider_id); delete checks ownership
- store.transaction() rolls back every write when the block raises
- verification codes replace each other per (type, target)
- purge drops only expired rows
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import StorageConflict
from auth.models import AuditLogEntry, SessionRecord, User
from auth.tokens import utcnow
from conftest import make_user

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def test_create_user_normalizes_case(store):
    uid = store.create_user(User(username="JDoe", email="J.Doe@Example.ORG", name="Jane"))
    user = store.get_by_id(uid)
    assert user.username == "jdoe"
    assert user.email == "j.doe@example.org"
    assert store.get_by_username("JDOE").id == uid
    assert store.get_by_email("j.doe@EXAMPLE.org").id == uid


def test_duplicate_username_rejected(store):
    make_user(store, "jdoe")
    with pytest.raises(IntegrityError):
        store.create_user(User(username="JDOE", email="other@example.org"))


def test_duplicate_email_rejected(store):
    make_user(store, "jdoe", email="jdoe@example.org")
    with pytest.raises(IntegrityError):
        store.create_user(User(username="other", email="JDOE@example.org"))


def test_unknown_role_leaves_no_user(store):
    with pytest.raises(ValueError):
        store.create_user(User(username="ghost", email="ghost@example.org"), role_names=("nosuchrole",))
    assert store.get_by_username("ghost") is None


def test_roles_loaded_with_permissions(store):
    uid = make_user(store, "phpboss", roles=("phpAdmin",))
    user = store.get_by_id(uid)
    assert [r.name for r in user.roles] == ["phpAdmin"]
    entities = {p.entity for p in user.roles[0].permissions}
    assert entities == {"php"}


def test_password_hash_optional(store):
    uid = make_user(store, "provideronly", password=None)
    assert store.get_password_hash(uid) is None
    store.set_password(uid, "hash-1")
    store.set_password(uid, "hash-2")
    assert store.get_password_hash(uid) == "hash-2"


def test_set_user_roles_replaces(store):
    uid = make_user(store, "jdoe")
    store.set_user_roles(uid, ["incidentAdmin", "user"])
    assert [r.name for r in store.get_by_id(uid).roles] == ["incidentAdmin", "user"]


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


def test_connection_unique_per_provider_identity(store):
    a = make_user(store, "alice")
    b = make_user(store, "bob")
    store.create_connection("github", "123", a)
    with pytest.raises(StorageConflict):
        store.create_connection("github", "123", b)
    assert store.count_connections("github", "123") == 1
    # Same provider_id on another provider is a different identity
    store.create_connection("microsoft", "123", b)


def test_delete_connection_checks_owner(store):
    a = make_user(store, "alice")
    b = make_user(store, "bob")
    conn = store.create_connection("github", "123", a)
    assert store.delete_connection(conn.id, b) is False
    assert store.get_connection("github", "123") is not None
    assert store.delete_connection(conn.id, a) is True
    assert store.get_connection("github", "123") is None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def test_transaction_rolls_back_on_error(store):
    uid = make_user(store, "alice")
    with pytest.raises(RuntimeError):
        with store.transaction() as conn:
            store.create_connection("github", "999", uid, conn=conn)
            store.insert_audit_log(AuditLogEntry(user_id=uid, action="CONNECT", entity="Connection"), conn=conn)
            raise RuntimeError("boom")
    assert store.get_connection("github", "999") is None
    assert store.list_audit_logs(user_id=uid) == []


# ---------------------------------------------------------------------------
# Sessions / verifications
# ---------------------------------------------------------------------------


def _session(sid: str, user_id: int, seconds: int) -> SessionRecord:
    return SessionRecord(id=sid, user_id=user_id, expires_at=(utcnow() + timedelta(seconds=seconds)).isoformat())


def test_purge_expired_sessions_keeps_live_rows(store):
    uid = make_user(store, "alice")
    store.create_session(_session("live", uid, 3600))
    store.create_session(_session("dead", uid, -3600))
    assert store.purge_expired_sessions() == 1
    assert store.get_session("live") is not None
    assert store.get_session("dead") is None


def test_delete_user_sessions(store):
    uid = make_user(store, "alice")
    other = make_user(store, "bob")
    store.create_session(_session("a1", uid, 3600))
    store.create_session(_session("a2", uid, 3600))
    store.create_session(_session("b1", other, 3600))
    assert store.delete_user_sessions(uid) == 2
    assert store.count_sessions(uid) == 0
    assert store.count_sessions(other) == 1


def test_upsert_verification_replaces_previous_code(store):
    later = (utcnow() + timedelta(minutes=10)).isoformat()
    store.upsert_verification("onboarding", "a@example.org", "first", later)
    store.upsert_verification("onboarding", "a@example.org", "second", later)
    assert store.get_verification("onboarding", "a@example.org") == ("second", later)
    assert store.delete_verification("onboarding", "a@example.org") is True
    assert store.delete_verification("onboarding", "a@example.org") is False


def test_audit_logs_newest_first(store):
    uid = make_user(store, "alice")
    for action in ("LOGIN", "LOGOUT", "LOGIN"):
        store.insert_audit_log(AuditLogEntry(user_id=uid, action=action, entity="User", details={"n": action}))
    rows = store.list_audit_logs(user_id=uid, limit=2)
    assert [r.action for r in rows] == ["LOGIN", "LOGOUT"]
    assert rows[0].details == {"n": "LOGIN"}
