"""
tests/test_elevation.py -- Unit tests for auth.elevation (shared-secret step-up).

Covers:
  - exact match promotes in the store and in the returned snapshot
  - mismatches (wrong, prefix, padded) leave the role untouched
  - unset or blank secret is a Misconfiguration even for an empty code
  - revoke_admin downgrades to USER
"""

from __future__ import annotations

import pytest

from auth.elevation import elevate, revoke_admin
from auth.models import Role, User
from auth.sessions import SessionManager
from core.errors import InvalidCode, Misconfiguration, NotFound

SECRET = "correct-horse-battery"


@pytest.fixture
def user_session(user_store, settings):
    user_id = user_store.create_user(User(email="a@x.com", name="A"))
    artifact = SessionManager(settings).create(user_id, "a@x.com", "A", Role.USER)
    return user_id, artifact.session


def test_exact_match_promotes(user_store, user_session) -> None:
    user_id, session = user_session
    elevated = elevate(user_store, session, SECRET, SECRET)
    assert elevated.role == Role.ADMIN
    assert elevated.expires_at == session.expires_at
    assert user_store.get_by_id(user_id).role == Role.ADMIN


@pytest.mark.parametrize("supplied", ["wrong", "correct-horse", SECRET + " ", " " + SECRET, SECRET.upper(), ""])
def test_mismatch_rejected_and_role_unchanged(user_store, user_session, supplied) -> None:
    user_id, session = user_session
    with pytest.raises(InvalidCode) as exc_info:
        elevate(user_store, session, supplied, SECRET)
    assert exc_info.value.status_code == 401
    assert user_store.get_by_id(user_id).role == Role.USER


@pytest.mark.parametrize("configured", ["", None, "   "])
@pytest.mark.parametrize("supplied", ["", "anything"])
def test_unset_secret_is_misconfiguration(user_store, user_session, configured, supplied) -> None:
    user_id, session = user_session
    with pytest.raises(Misconfiguration) as exc_info:
        elevate(user_store, session, supplied, configured)
    assert exc_info.value.status_code == 500
    assert "ADMIN_SECRET_CODE" not in exc_info.value.message
    assert user_store.get_by_id(user_id).role == Role.USER


def test_deleted_user_cannot_elevate(user_store, settings) -> None:
    session = SessionManager(settings).create("gone", "gone@x.com", "Gone", Role.USER).session
    with pytest.raises(NotFound):
        elevate(user_store, session, SECRET, SECRET)


def test_revoke_admin_downgrades(user_store) -> None:
    user_id = user_store.create_user(User(email="boss@x.com", name="Boss", role=Role.ADMIN))
    revoke_admin(user_store, user_id)
    assert user_store.get_by_id(user_id).role == Role.USER


def test_revoke_unknown_user(user_store) -> None:
    with pytest.raises(NotFound):
        revoke_admin(user_store, "missing")
