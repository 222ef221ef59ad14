"""Unit tests for auth/linking.py -- reconciling provider profiles with accounts.

Covers every rule, in order:
  1. connection exists + session user -> AlreadyLinkedSelf / AlreadyLinkedOther (no state change)
  2. no connection + session user     -> Linked
  3. connection exists + no session   -> Resumed (new remembered session)
  4. verified email matches a user    -> MatchedByEmail (link + login)
  5. otherwise                        -> NeedsOnboarding (verification bag, sanitized username)

Plus: replaying a callback is idempotent, a lost insert race re-reads and
settles, and an audit failure leaves no connection or session behind.
"""

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import AuditWriteFailure, StorageConflict
from auth.linking import (
    AlreadyLinkedOther,
    AlreadyLinkedSelf,
    LinkContext,
    Linked,
    MatchedByEmail,
    NeedsOnboarding,
    Resumed,
    decide,
    sanitize_username,
)
from auth.models import Profile
from auth.verification import PURPOSE_ONBOARDING_PROVIDER
from conftest import make_user


def _profile(provider_id="gh-1", email="jdoe@example.org", username="J Doe!!", verified=True) -> Profile:
    return Profile(
        provider_id=provider_id,
        email=email,
        username=username,
        name="Jane",
        image_url="https://avatars.example/jdoe.png",
        email_verified=verified,
    )


@pytest.fixture
def linker(identity):
    return identity.linker


# ---------------------------------------------------------------------------
# Username suggestion
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("J Doe!!", "j_doe__"),
        ("ab", "ab_"),
        ("", "___"),
        ("A" * 30, "a" * 20),
        (None, None),
    ],
)
def test_sanitize_username(raw, expected):
    assert sanitize_username(raw) == expected


# ---------------------------------------------------------------------------
# Rule selection (pure)
# ---------------------------------------------------------------------------


def test_decide_rule_order(store):
    uid = make_user(store, "alice")
    existing = store.create_connection("github", "gh-1", uid)
    user = store.get_by_id(uid)
    p = _profile()
    assert decide(LinkContext("github", p, session_user_id=uid, existing=existing)) == "already_linked"
    assert decide(LinkContext("github", p, session_user_id=uid, existing=None)) == "link_to_session"
    assert decide(LinkContext("github", p, session_user_id=None, existing=existing)) == "resume"
    assert decide(LinkContext("github", p, None, None, email_match=user)) == "match_by_email"
    assert decide(LinkContext("github", _profile(verified=False), None, None, email_match=user)) == "onboarding"
    assert decide(LinkContext("github", p, None, None)) == "onboarding"


# ---------------------------------------------------------------------------
# Rule 1
# ---------------------------------------------------------------------------


def test_already_linked_self(store, linker):
    uid = make_user(store, "alice")
    store.create_connection("github", "gh-1", uid)
    outcome = linker.link("github", _profile(), session_user_id=uid)
    assert isinstance(outcome, AlreadyLinkedSelf)
    assert store.count_sessions(uid) == 0


def test_already_linked_other_does_not_move_connection(store, linker):
    owner = make_user(store, "owner")
    intruder = make_user(store, "intruder")
    store.create_connection("github", "gh-1", owner)
    outcome = linker.link("github", _profile(), session_user_id=intruder)
    assert isinstance(outcome, AlreadyLinkedOther)
    assert store.get_connection("github", "gh-1").user_id == owner


# ---------------------------------------------------------------------------
# Rule 2
# ---------------------------------------------------------------------------


def test_link_to_signed_in_user(store, linker):
    uid = make_user(store, "alice")
    outcome = linker.link("github", _profile(email="different@example.org"), session_user_id=uid)
    assert isinstance(outcome, Linked)
    assert store.get_connection("github", "gh-1").user_id == uid
    assert [e.action for e in store.list_audit_logs(user_id=uid)] == ["CONNECT"]
    # Additive: no new session
    assert store.count_sessions(uid) == 0


def test_replay_is_idempotent(store, linker):
    uid = make_user(store, "alice")
    assert isinstance(linker.link("github", _profile(), session_user_id=uid), Linked)
    assert isinstance(linker.link("github", _profile(), session_user_id=uid), AlreadyLinkedSelf)
    assert store.count_connections("github", "gh-1") == 1


# ---------------------------------------------------------------------------
# Rule 3
# ---------------------------------------------------------------------------


def test_resume_logs_in_owner(store, linker):
    uid = make_user(store, "alice")
    store.create_connection("github", "gh-1", uid)
    outcome = linker.link("github", _profile(), session_user_id=None)
    assert isinstance(outcome, Resumed)
    assert outcome.session.record.user_id == uid
    assert outcome.session.max_age is not None
    assert linker.sessions.resolve_principal(outcome.session.token) == uid


# ---------------------------------------------------------------------------
# Rule 4
# ---------------------------------------------------------------------------


def test_match_by_verified_email(store, linker):
    """A verified provider email equal to an existing account links and logs in."""
    uid = make_user(store, "jdoe", email="jdoe@example.org")
    outcome = linker.link("github", _profile(username="J Doe!!"), session_user_id=None)
    assert isinstance(outcome, MatchedByEmail)
    assert outcome.connection.user_id == uid
    assert outcome.session.record.user_id == uid
    assert store.get_connection("github", "gh-1").user_id == uid
    details = store.list_audit_logs(user_id=uid)[0].details
    assert details == {"provider": "github", "linked_by": "email"}


def test_unverified_email_never_matches(store, linker):
    uid = make_user(store, "jdoe", email="jdoe@example.org")
    outcome = linker.link("github", _profile(verified=False), session_user_id=None)
    assert isinstance(outcome, NeedsOnboarding)
    assert store.list_connections(uid) == []


# ---------------------------------------------------------------------------
# Rule 5
# ---------------------------------------------------------------------------


def test_needs_onboarding_stores_profile(identity, linker):
    outcome = linker.link("github", _profile(email="new@example.org"), session_user_id=None)
    assert isinstance(outcome, NeedsOnboarding)
    assert outcome.suggested_username == "j_doe__"
    assert outcome.email == "new@example.org"
    bag = identity.verifications.get(outcome.verification_id, PURPOSE_ONBOARDING_PROVIDER)
    assert bag["providerName"] == "github"
    assert bag["providerId"] == "gh-1"
    assert bag["onboardingEmail"] == "new@example.org"
    assert bag["prefilledProfile"]["username"] == "j_doe__"
    assert bag["prefilledProfile"]["image_url"] == "https://avatars.example/jdoe.png"


# ---------------------------------------------------------------------------
# Races and failures
# ---------------------------------------------------------------------------


def test_lost_insert_race_settles_on_reread(store, linker, monkeypatch):
    """Another callback linked the identity between our read and our insert."""
    owner = make_user(store, "owner")
    me = make_user(store, "me")
    store.create_connection("github", "gh-1", owner)

    real_get = store.get_connection
    calls = {"n": 0}

    def stale_then_real(*args, **kwargs):
        calls["n"] += 1
        return None if calls["n"] == 1 else real_get(*args, **kwargs)

    monkeypatch.setattr(store, "get_connection", stale_then_real)
    outcome = linker.link("github", _profile(), session_user_id=me)
    assert isinstance(outcome, AlreadyLinkedOther)
    assert calls["n"] == 2
    assert store.list_audit_logs(user_id=me) == []


def test_gives_up_after_repeated_conflicts(store, linker, monkeypatch):
    owner = make_user(store, "owner")
    me = make_user(store, "me")
    store.create_connection("github", "gh-1", owner)
    monkeypatch.setattr(store, "get_connection", lambda *a, **kw: None)
    with pytest.raises(StorageConflict):
        linker.link("github", _profile(), session_user_id=me)


def test_audit_failure_leaves_no_partial_state(store, linker, monkeypatch):
    uid = make_user(store, "jdoe", email="jdoe@example.org")

    def broken_audit(entry, conn=None):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "insert_audit_log", broken_audit)
    with pytest.raises(AuditWriteFailure):
        linker.link("github", _profile(), session_user_id=None)
    monkeypatch.undo()
    assert store.get_connection("github", "gh-1") is None
    assert store.count_sessions(uid) == 0
