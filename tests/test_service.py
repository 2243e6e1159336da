"""
tests/test_service.py -- AuthService flow tests (no HTTP layer).

Covers:
  - register / login / issue_api_token / verify_credentials
  - register -> login (USER) -> elevate -> login (ADMIN)
  - OTP sign-in with and without account creation
  - OAuth reconciliation: create, link by email, refuse unverified email
  - admin role management rules
"""

from __future__ import annotations

import asyncio

import pytest

from auth.models import OAuthIdentity, Role, User
from auth.tokens import verify_token
from core.errors import Conflict, Forbidden, InputValidationError, InvalidCode, InvalidCredential, NotFound, RateLimited

EMAIL = "a@x.com"
PASSWORD = "Secret1!"


def _identity(**overrides) -> OAuthIdentity:
    values = {
        "external_id": "google-sub-1001",
        "email": "grace@example.com",
        "name": "Grace Hopper",
        "email_verified": True,
        "picture": "https://example.com/grace.png",
    }
    values.update(overrides)
    return OAuthIdentity(**values)


class TestPasswordFlows:
    def test_register_creates_user_role(self, auth_service) -> None:
        user, artifact = auth_service.register(EMAIL, PASSWORD, "Alice")
        assert user.role == Role.USER
        assert user.password_hash and user.password_hash != PASSWORD
        assert artifact.session.user_id == user.id
        assert artifact.session.role == Role.USER
        assert auth_service.users.get_by_id(user.id).last_login is not None

    def test_register_duplicate_email_conflicts(self, auth_service) -> None:
        auth_service.register(EMAIL, PASSWORD, "Alice")
        with pytest.raises(Conflict) as exc_info:
            auth_service.register("A@X.COM", PASSWORD, "Alice Again")
        assert exc_info.value.status_code == 409

    def test_register_weak_password(self, auth_service) -> None:
        with pytest.raises(InputValidationError):
            auth_service.register(EMAIL, "password", "Alice")
        assert auth_service.users.get_by_email(EMAIL) is None

    def test_login_wrong_password_and_unknown_email_match(self, auth_service) -> None:
        auth_service.register(EMAIL, PASSWORD, "Alice")
        with pytest.raises(InvalidCredential) as wrong_pw:
            auth_service.login(EMAIL, "Secret2!")
        with pytest.raises(InvalidCredential) as unknown:
            auth_service.login("nobody@x.com", PASSWORD)
        assert wrong_pw.value.to_dict() == unknown.value.to_dict()

    def test_login_remember_me(self, auth_service) -> None:
        auth_service.register(EMAIL, PASSWORD, "Alice")
        _, short = auth_service.login(EMAIL, PASSWORD)
        _, long = auth_service.login(EMAIL, PASSWORD, remember_me=True)
        assert long.session.expires_at > short.session.expires_at

    def test_issue_api_token(self, auth_service) -> None:
        user, _ = auth_service.register(EMAIL, PASSWORD, "Alice")
        _, issued = auth_service.issue_api_token(EMAIL, PASSWORD)
        claims = verify_token(issued.token)
        assert claims.user_id == user.id
        assert claims.role == Role.USER

    def test_verify_credentials_issues_nothing(self, auth_service) -> None:
        auth_service.register(EMAIL, PASSWORD, "Alice")
        assert auth_service.verify_credentials(EMAIL, PASSWORD).email == EMAIL


def test_register_login_elevate_login(auth_service, settings) -> None:
    """End to end: a registered USER elevates, and the next login carries ADMIN."""
    auth_service.register(EMAIL, PASSWORD, "Alice")
    user, artifact = auth_service.login(EMAIL, PASSWORD)
    assert artifact.session.role == Role.USER

    elevated = auth_service.elevate(artifact.session, settings.admin_secret_code)
    assert elevated.session.role == Role.ADMIN

    _, second = auth_service.login(EMAIL, PASSWORD)
    assert second.session.role == Role.ADMIN
    assert auth_service.users.get_by_id(user.id).role == Role.ADMIN


def test_elevate_with_wrong_code(auth_service) -> None:
    _, artifact = auth_service.register(EMAIL, PASSWORD, "Alice")
    with pytest.raises(InvalidCode):
        auth_service.elevate(artifact.session, "nope")


class TestOtpFlows:
    def test_send_then_verify_creates_account(self, auth_service, email_sender) -> None:
        status = auth_service.send_otp("New@X.com")
        assert status.count == 1
        code = email_sender.last_code("new@x.com")
        user, artifact, is_new = auth_service.verify_otp("new@x.com", code)
        assert is_new is True
        assert user.role == Role.USER
        assert user.password_hash is None
        assert artifact.session.email == "new@x.com"

    def test_existing_account_signs_in(self, auth_service, email_sender) -> None:
        existing, _ = auth_service.register(EMAIL, PASSWORD, "Alice")
        auth_service.send_otp(EMAIL)
        user, _, is_new = auth_service.verify_otp(EMAIL, email_sender.last_code(EMAIL))
        assert is_new is False
        assert user.id == existing.id

    def test_no_creation_when_disabled(self, auth_service, email_sender) -> None:
        auth_service.send_otp("ghost@x.com")
        with pytest.raises(InvalidCode):
            auth_service.verify_otp("ghost@x.com", email_sender.last_code("ghost@x.com"), create_if_absent=False)
        assert auth_service.users.get_by_email("ghost@x.com") is None

    def test_code_reuse_fails(self, auth_service, email_sender) -> None:
        auth_service.send_otp(EMAIL)
        code = email_sender.last_code(EMAIL)
        auth_service.verify_otp(EMAIL, code)
        with pytest.raises(InvalidCode):
            auth_service.verify_otp(EMAIL, code)

    def test_send_limit(self, auth_service) -> None:
        for _ in range(5):
            auth_service.send_otp(EMAIL)
        with pytest.raises(RateLimited):
            auth_service.send_otp(EMAIL)


class TestOAuthFlows:
    def test_sign_in_creates_user_with_persistent_session(self, auth_service) -> None:
        user, artifact = asyncio.run(auth_service.oauth_sign_in("auth-code"))
        assert user.email == "grace@example.com"
        assert user.external_id == "google-sub-1001"
        assert user.role == Role.USER
        assert artifact.session.remember_me is True
        assert artifact.session.external_id == "google-sub-1001"

    def test_repeat_sign_in_reuses_account(self, auth_service) -> None:
        first, _ = asyncio.run(auth_service.oauth_sign_in("code-1"))
        second, _ = asyncio.run(auth_service.oauth_sign_in("code-2"))
        assert first.id == second.id
        assert len(auth_service.users.list_users()) == 1

    def test_links_existing_email_account(self, auth_service) -> None:
        existing, _ = auth_service.register("grace@example.com", PASSWORD, "Grace")
        user = auth_service.reconcile_oauth_identity(_identity())
        assert user.id == existing.id
        assert user.external_id == "google-sub-1001"
        assert user.picture == "https://example.com/grace.png"
        assert user.password_hash == existing.password_hash

    def test_keeps_role_of_existing_admin(self, auth_service) -> None:
        auth_service.users.create_user(User(email="grace@example.com", name="Grace", role=Role.ADMIN))
        assert auth_service.reconcile_oauth_identity(_identity()).role == Role.ADMIN

    def test_session_carries_stored_link_not_provider_subject(self, auth_service) -> None:
        auth_service.users.create_user(User(email="grace@example.com", name="Grace", external_id="google-sub-earlier"))
        user, artifact = asyncio.run(auth_service.oauth_sign_in("auth-code"))
        assert user.external_id == "google-sub-earlier"
        assert artifact.session.external_id == "google-sub-earlier"

    def test_unverified_email_rejected(self, auth_service) -> None:
        with pytest.raises(InvalidCredential):
            auth_service.reconcile_oauth_identity(_identity(email_verified=False))
        assert auth_service.users.list_users() == []

    def test_no_creation_when_disabled(self, auth_service) -> None:
        with pytest.raises(Forbidden):
            auth_service.reconcile_oauth_identity(_identity(), create_if_absent=False)


class TestRoleManagement:
    def test_admin_promotes_and_downgrades_other_user(self, auth_service) -> None:
        admin, admin_artifact = auth_service.register("boss@x.com", PASSWORD, "Boss")
        auth_service.users.update_user(admin.id, role=Role.ADMIN)
        target, _ = auth_service.register(EMAIL, PASSWORD, "Alice")

        promoted = auth_service.set_role(admin_artifact.session, target.id, Role.ADMIN)
        assert promoted.role == Role.ADMIN
        downgraded = auth_service.set_role(admin_artifact.session, target.id, Role.USER)
        assert downgraded.role == Role.USER

    def test_cannot_change_own_role(self, auth_service) -> None:
        _, artifact = auth_service.register("boss@x.com", PASSWORD, "Boss")
        with pytest.raises(InputValidationError):
            auth_service.set_role(artifact.session, artifact.session.user_id, Role.USER)

    def test_unknown_user(self, auth_service) -> None:
        _, artifact = auth_service.register("boss@x.com", PASSWORD, "Boss")
        with pytest.raises(NotFound):
            auth_service.set_role(artifact.session, "missing", Role.ADMIN)
