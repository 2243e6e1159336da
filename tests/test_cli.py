"""
tests/test_cli.py -- Operator CLI commands in main.py.

Commands receive the test stores directly, so no command touches the
default database file.
"""

from __future__ import annotations

import pytest

from auth.models import Role, User
from auth.otp import OtpService
from auth.passwords import verify_password
from main import cmd_create_admin, cmd_hash_password, cmd_purge_otp, main


def test_hash_password_prints_bcrypt_hash(capsys) -> None:
    assert cmd_hash_password("Secret1!") == 0
    hashed = capsys.readouterr().out.strip()
    assert hashed.startswith("$2b$")
    assert verify_password("Secret1!", hashed)


def test_create_admin_with_password(user_store, capsys) -> None:
    assert cmd_create_admin("Root@X.com", "Root", "Secret1!", store=user_store) == 0
    user = user_store.get_by_email("root@x.com")
    assert user.role == Role.ADMIN
    assert verify_password("Secret1!", user.password_hash)
    assert "Created ADMIN root@x.com" in capsys.readouterr().out


def test_create_admin_generates_password(user_store, capsys) -> None:
    assert cmd_create_admin("root@x.com", "Root", None, store=user_store) == 0
    out = capsys.readouterr().out
    generated = out.split("Generated password (shown once): ")[1].strip()
    assert verify_password(generated, user_store.get_by_email("root@x.com").password_hash)


def test_create_admin_rejects_weak_password(user_store, capsys) -> None:
    assert cmd_create_admin("root@x.com", "Root", "short", store=user_store) == 1
    assert user_store.get_by_email("root@x.com") is None
    assert "[!]" in capsys.readouterr().out


def test_create_admin_promotes_existing(user_store, capsys) -> None:
    user_store.create_user(User(email="alice@x.com", name="Alice"))
    assert cmd_create_admin("alice@x.com", "Alice", None, store=user_store) == 0
    assert user_store.get_by_email("alice@x.com").role == Role.ADMIN
    assert len(user_store.list_users()) == 1
    assert "role set to ADMIN" in capsys.readouterr().out


def test_purge_otp(otp_store, settings, clock, capsys) -> None:
    # FakeClock starts in 2023, so both rows are already expired in real time.
    otp = OtpService(otp_store, settings, clock=clock)
    otp.store("a@x.com", "123456")
    otp.check_rate_limit("a@x.com")
    assert cmd_purge_otp(store=otp_store) == 0
    assert "Purged 2" in capsys.readouterr().out


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 1
    assert "create-admin" in capsys.readouterr().out


def test_create_admin_requires_email() -> None:
    with pytest.raises(SystemExit):
        main(["create-admin", "--name", "Root"])
