"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes own the domain shape only.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """The two-role authorization model. Every auth path converges on one."""

    USER = "USER"
    ADMIN = "ADMIN"


def normalize_email(email: str) -> str:
    """Emails are case-insensitive identities: trim and lowercase everywhere."""
    return email.strip().lower()


@dataclass
class User:
    """A DocAccess account.

    password_hash is None for accounts created through OAuth or OTP sign-in;
    those users cannot use the password flows until a password is set.
    external_id is the OAuth provider's stable subject id, filled in on the
    first OAuth login (either at creation or when linking an existing account).
    """

    email: str
    name: str
    role: Role = Role.USER
    id: str | None = None
    password_hash: str | None = None  # None = passwordless account
    external_id: str | None = None  # OAuth subject id
    picture: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class Session:
    """Identity snapshot carried by the signed browser session cookie.

    Nothing about a session is stored server-side. Validity is the signature
    plus expires_at; role reflects the store at issuance time.
    """

    user_id: str
    email: str
    name: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    external_id: str | None = None
    remember_me: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def with_role(self, role: Role) -> Session:
        return replace(self, role=role)


@dataclass(frozen=True)
class SessionArtifact:
    """A signed session ready for transport.

    max_age is None for browser-session cookies (remember_me=False) so the
    cookie dies with the browser; the signed expiry still bounds it server-side.
    """

    value: str
    session: Session
    max_age: int | None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a bearer token."""

    user_id: str
    email: str
    role: Role
    expires_at: datetime


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: int  # seconds


@dataclass
class OtpRecord:
    """One live one-time passcode per email. code_hash is HMAC-SHA256, never the code."""

    email: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0


@dataclass(frozen=True)
class RateLimitStatus:
    """Result of one atomic check-and-increment on the OTP issuance counter."""

    exceeded: bool
    count: int
    limit: int
    retry_after: int  # seconds until the current window closes


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    id_token: str | None = None


@dataclass(frozen=True)
class OAuthIdentity:
    """External profile normalized from the provider's userinfo response."""

    external_id: str
    email: str
    name: str
    email_verified: bool
    picture: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one outbound email send. error is for logs, not for clients."""

    success: bool
    error: str | None = None
