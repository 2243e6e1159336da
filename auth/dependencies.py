"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two independent credential paths, each with its own verifier:
  1. Session cookie ("docaccess_session") -- browser clients; verified by
     SessionManager (itsdangerous, SECRET_KEY).
  2. Authorization: Bearer <token>         -- API/mobile clients; verified by
     auth.tokens.verify_token (python-jose, JWT_SECRET).

Session gates (the authorization gate for admin-only collaborators):
  try_get_session()      soft variant, returns None
  get_current_session()  raises Unauthorized (401)
  require_admin()        raises AdminRequired (403) for role != ADMIN
  require_ownership()    raises Forbidden (403) unless owner or ADMIN

get_current_user() accepts either path and converges on the stored User, so
identity endpoints work for both client types.

Errors are core.errors.AppError subclasses; api/main.py renders them.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import Session, TokenClaims, User
from auth.sessions import SESSION_COOKIE_NAME, SessionManager, ensure_owner
from auth.tokens import extract_bearer, verify_token
from core.errors import Unauthorized


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def try_get_session(request: Request) -> Session | None:
    """Return the verified session from the cookie, or None. Never raises."""
    return _sessions(request).read(request.cookies.get(SESSION_COOKIE_NAME))


def get_current_session(request: Request) -> Session:
    """Require a valid session cookie.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Session = Depends(get_current_session)): ...
    """
    return _sessions(request).require(request.cookies.get(SESSION_COOKIE_NAME))


def require_admin(request: Request) -> Session:
    """Require a session whose role is ADMIN. 401 if unauthenticated, 403 otherwise."""
    return _sessions(request).require_admin(request.cookies.get(SESSION_COOKIE_NAME))


def require_ownership(request: Request, owner_id: str) -> Session:
    """Require a session that owns owner_id's resource, or an ADMIN session.

    Not a Depends() target: the owner id comes from the loaded resource, so
    handlers call this after fetching it.
    """
    return ensure_owner(get_current_session(request), owner_id)


def try_get_token_claims(request: Request) -> TokenClaims | None:
    return verify_token(extract_bearer(request.headers.get("Authorization")))


def get_current_user(request: Request) -> User:
    """Authenticate via session cookie, then bearer token; return the stored User.

    The user must still exist in the store. The role on the returned User is
    the stored role, which may be newer than the one in the artifact.
    """
    user_id: str | None = None
    session = try_get_session(request)
    if session is not None:
        user_id = session.user_id
    else:
        claims = try_get_token_claims(request)
        if claims is not None:
            user_id = claims.user_id
    if user_id is None:
        raise Unauthorized()
    user = request.app.state.user_store.get_by_id(user_id)
    if user is None:
        raise Unauthorized()
    return user
