"""
auth/passwords.py -- Credential Verifier: bcrypt hashing and password checks.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds so tests can run with the minimum of 4.

  Verification: the stored hash embeds its own salt and cost, so recomputing
       bcrypt.hashpw(plain, stored) reproduces the stored hash exactly when the
       password is right. The two digests are compared with
       hmac.compare_digest so the comparison time does not depend on where the
       first differing byte is.

  Timing equalization [C1]: authenticate() always runs bcrypt, against
       _DUMMY_HASH when the email is unknown or the account has no password,
       so response time does not reveal whether an account exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import re
import secrets
from typing import TYPE_CHECKING

import bcrypt

from auth.models import normalize_email
from core.config import get_settings
from core.errors import InputValidationError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

# bcrypt rejects (5.x) or truncates (4.x) input beyond 72 bytes.
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72

_STRENGTH_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter."),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter."),
    (re.compile(r"[0-9]"), "Password must contain at least one digit."),
    (re.compile(r"[^A-Za-z0-9]"), "Password must contain at least one special character."),
]


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, stored_hash: str | None) -> bool:
    """Return True if plain matches stored_hash. Never raises.

    A malformed, empty, or missing hash is a mismatch, not an error.
    """
    if not stored_hash:
        return False
    try:
        expected = stored_hash.encode("utf-8")
        candidate = bcrypt.hashpw(plain.encode("utf-8"), expected)
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(candidate, expected)


def validate_password_strength(plain: str) -> None:
    """Registration policy. Raises InputValidationError naming the first failed rule."""
    if len(plain) < MIN_PASSWORD_LENGTH:
        raise InputValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InputValidationError(f"Password cannot exceed {MAX_PASSWORD_BYTES} bytes.")
    for pattern, message in _STRENGTH_RULES:
        if not pattern.search(plain):
            raise InputValidationError(message)


def generate_random_password() -> str:
    """32 random bytes as 64 hex chars. Used by the operator CLI."""
    return secrets.token_hex(32)


# Computed once at import so the first unknown-email login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("docaccess_timing_dummy")


def authenticate(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password pair with timing equalization [C1].

    Returns the User on success, None on any failure. Callers must report all
    failures with the same generic message.
    """
    user = store.get_by_email(normalize_email(email))
    if user is None or user.password_hash is None:
        # Do NOT return before running bcrypt
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user
