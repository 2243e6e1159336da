"""
auth/tokens.py -- Token Issuer: signed bearer tokens for non-browser clients.

Security design decisions:
  JWT: python-jose with HS256, signed with JWT_SECRET (never SECRET_KEY, which
       signs browser sessions). Tokens carry sub (user id), email, role, iat,
       exp and typ="access". verify_token() returns None on any failure --
       the dependency layer turns that into a 401.

  Lifetime: TOKEN_EXPIRE_SECONDS (7 days). Stateless: there is no revoke
       operation. A client that needs shorter-lived access requests a new
       token with a smaller expires_in; emergency revocation means rotating
       JWT_SECRET, which invalidates every outstanding token.

  Separation: session cookies are verified by auth/sessions.py with a
       different library and key. Neither routine accepts the other's
       artifact, so a flaw in one does not silently open the other.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import IssuedToken, Role, TokenClaims
from core.config import get_settings

logger = logging.getLogger("docaccess.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"


def issue_token(user_id: str, email: str, role: Role, expires_in: timedelta | None = None) -> IssuedToken:
    """Encode a signed bearer token for the given identity.

    Args:
        user_id:    Store id of the user (JWT subject).
        email:      Normalized email.
        role:       Role at issuance time, read from the store by the caller.
        expires_in: Override the default TOKEN_EXPIRE_SECONDS lifetime.
    """
    lifetime = expires_in if expires_in is not None else timedelta(seconds=_settings.token_expire_seconds)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "role": Role(role).value,
        "typ": _TOKEN_TYPE,
        "iat": now,
        "exp": now + lifetime,
    }
    token = jwt.encode(payload, _settings.jwt_secret, algorithm=_ALGORITHM)
    return IssuedToken(token=token, expires_in=int(lifetime.total_seconds()))


def verify_token(token: str | None) -> TokenClaims | None:
    """Decode and verify a bearer token. Returns claims, or None on any failure."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, _settings.jwt_secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != _TOKEN_TYPE:
        return None
    try:
        return TokenClaims(
            user_id=str(payload["sub"]),
            email=str(payload["email"]),
            role=Role(payload["role"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        logger.debug("Rejected bearer token with malformed claims")
        return None


def extract_bearer(auth_header: str | None) -> str | None:
    """'Bearer eyJhbGciOi...' -> 'eyJhbGciOi...'; anything else -> None."""
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None
