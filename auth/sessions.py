"""
auth/sessions.py -- Session Manager: signed, stateless browser sessions.

The session is an identity snapshot (user id, email, name, role, external id,
issued/expiry instants) serialized and signed with itsdangerous using
SECRET_KEY. Nothing is stored server-side:
  - validity = signature + embedded expiry,
  - logout   = tell the browser to discard the cookie (best effort; a copied
               cookie stays valid until its expiry -- there is no denylist).

Bearer tokens (auth/tokens.py) are a separate artifact: different library,
different key (JWT_SECRET), different verification routine. A session value
is never accepted as a token, nor the reverse.

Lifetimes:
  remember_me=False  SESSION_TTL_SECONDS (30 min); cookie has no Max-Age, so
                     it is also dropped when the browser closes.
  remember_me=True   REMEMBER_ME_TTL_SECONDS (7 days); cookie Max-Age matches.

Cookie flags: httpOnly, SameSite=strict, Secure when SECURE_COOKIES=true.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from itsdangerous import BadData, URLSafeSerializer

from auth.models import Role, Session, SessionArtifact
from core.config import Settings
from core.errors import AdminRequired, Forbidden, Unauthorized

logger = logging.getLogger("docaccess.auth.sessions")

SESSION_COOKIE_NAME = "docaccess_session"
_SALT = "docaccess.session"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_admin(session: Session) -> Session:
    """Raise AdminRequired unless the session role is ADMIN."""
    if not session.is_admin:
        raise AdminRequired()
    return session


def ensure_owner(session: Session, owner_id: str) -> Session:
    """Raise Forbidden unless the session owns the resource. Admins bypass ownership."""
    if session.is_admin or session.user_id == owner_id:
        return session
    raise Forbidden("You can only access your own resources.")


class SessionManager:
    """Issue, read and destroy signed session artifacts.

    Args:
        settings: Settings providing SECRET_KEY, TTLs and SECURE_COOKIES.
        clock:    Returns the current aware UTC datetime. Injected for tests.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> None:
        self._settings = settings
        self._clock = clock
        self._serializer = URLSafeSerializer(settings.secret_key, salt=_SALT)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        email: str,
        name: str,
        role: Role,
        external_id: str | None = None,
        remember_me: bool = False,
    ) -> SessionArtifact:
        ttl = self._settings.remember_me_ttl_seconds if remember_me else self._settings.session_ttl_seconds
        issued_at = self._clock().replace(microsecond=0)
        session = Session(
            user_id=user_id,
            email=email,
            name=name,
            role=Role(role),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl),
            external_id=external_id,
            remember_me=remember_me,
        )
        return self._sign(session)

    def refresh(self, session: Session, role: Role) -> SessionArtifact:
        """Re-sign a snapshot with a new role, keeping its original expiry."""
        return self._sign(session.with_role(Role(role)))

    def _sign(self, session: Session) -> SessionArtifact:
        payload = {
            "uid": session.user_id,
            "email": session.email,
            "name": session.name,
            "role": session.role.value,
            "ext": session.external_id,
            "iat": int(session.issued_at.timestamp()),
            "exp": int(session.expires_at.timestamp()),
            "rm": session.remember_me,
        }
        value = self._serializer.dumps(payload)
        max_age = None
        if session.remember_me:
            max_age = max(0, int((session.expires_at - self._clock()).total_seconds()))
        return SessionArtifact(value=value, session=session, max_age=max_age)

    # ------------------------------------------------------------------
    # Read / require
    # ------------------------------------------------------------------

    def read(self, artifact: str | None) -> Session | None:
        """Verify signature and expiry. None means "not signed in", not an error."""
        if not artifact:
            return None
        try:
            payload = self._serializer.loads(artifact)
        except BadData:
            logger.debug("Rejected session cookie with a bad signature")
            return None
        try:
            session = Session(
                user_id=str(payload["uid"]),
                email=str(payload["email"]),
                name=str(payload["name"]),
                role=Role(payload["role"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                external_id=payload.get("ext"),
                remember_me=bool(payload.get("rm", False)),
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("Rejected session cookie with a malformed payload")
            return None
        if session.expires_at <= self._clock():
            return None
        return session

    def require(self, artifact: str | None) -> Session:
        session = self.read(artifact)
        if session is None:
            raise Unauthorized("Please sign in first.")
        return session

    def require_admin(self, artifact: str | None) -> Session:
        return ensure_admin(self.require(artifact))

    def require_ownership(self, artifact: str | None, owner_id: str) -> Session:
        return ensure_owner(self.require(artifact), owner_id)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def set_cookie(self, response, artifact: SessionArtifact) -> None:
        """Write the session as an httpOnly cookie on a Starlette response."""
        response.set_cookie(
            SESSION_COOKIE_NAME,
            value=artifact.value,
            max_age=artifact.max_age,
            httponly=True,
            samesite="strict",
            secure=self._settings.secure_cookies,
            path="/",
        )

    def destroy(self, response) -> None:
        """Instruct the client to discard its session cookie (expired marker)."""
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            path="/",
            httponly=True,
            samesite="strict",
            secure=self._settings.secure_cookies,
        )
