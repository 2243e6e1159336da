"""
auth/elevation.py -- Admin Elevation Protocol (step-up to ADMIN).

    AUTHENTICATED(role=USER) --[valid shared secret]--> AUTHENTICATED(role=ADMIN)

Precondition: the caller already holds a valid session. The route obtains it
through SessionManager.require() before calling elevate(); elevation is never
reachable unauthenticated.

Order of checks matters:
  1. Secret not configured -> Misconfiguration (500), logged at ERROR. This is
     checked BEFORE the supplied code is looked at, so an unset secret can
     never be matched -- not even by an empty submission.
  2. Exact, constant-time match (hmac.compare_digest on UTF-8 bytes). No
     trimming, no prefix matching.
  3. Persist role=ADMIN, then reflect it in the returned snapshot.

revoke_admin() is the "remove role" operation of the two-role model: it
downgrades to USER instead of deleting a role.
"""

from __future__ import annotations

import hmac
import logging

from auth.models import Role, Session
from auth.store import UserStore
from core.errors import InvalidCode, Misconfiguration, NotFound

logger = logging.getLogger("docaccess.auth.elevation")


def elevate(store: UserStore, session: Session, supplied_code: str, configured_secret: str | None) -> Session:
    """Promote the session's user to ADMIN if supplied_code equals the configured secret."""
    if not configured_secret or not configured_secret.strip():
        logger.error("ADMIN_SECRET_CODE is not configured -- rejecting elevation for user %s", session.user_id)
        raise Misconfiguration("ADMIN_SECRET_CODE is not configured")

    if not hmac.compare_digest(supplied_code.encode("utf-8"), configured_secret.encode("utf-8")):
        logger.warning("Admin elevation rejected for user %s: invalid code", session.user_id)
        raise InvalidCode("Invalid admin code.")

    if not store.update_user(session.user_id, role=Role.ADMIN):
        # Session outlived its user record.
        raise NotFound("User not found.")
    logger.info("User %s elevated to ADMIN", session.user_id)
    return session.with_role(Role.ADMIN)


def revoke_admin(store: UserStore, user_id: str) -> None:
    """Downgrade a user to USER. Removing a role never leaves a user role-less."""
    if not store.update_user(user_id, role=Role.USER):
        raise NotFound("User not found.")
    logger.info("User %s downgraded to USER", user_id)
