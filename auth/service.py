"""
auth/service.py -- AuthService: composes the identity components per flow.

Every sign-in path ends the same way (_start_session): stamp last_login, then
mint a session snapshot whose role is read from the store at that moment. The
route layer only parses input, calls one method here and writes the cookie.

Flows:
  register            password policy -> bcrypt -> insert (role USER) -> session
  login               authenticate (timing-equalized) -> session
  verify_credentials  authenticate only; first step of the two-factor sign-in
  issue_api_token     authenticate -> bearer token (no cookie)
  send_otp            rate limit -> generate -> store -> deliver
  verify_otp          consume code -> find or create user -> session
  oauth_sign_in       exchange -> identity -> reconcile by external id/email -> session
  elevate             shared-secret step-up to ADMIN -> re-signed session
  set_role            admin changes another user's role

Account creation by OTP or OAuth is an explicit decision point
(create_if_absent), defaulting to the OTP_AUTO_CREATE_USERS /
OAUTH_AUTO_CREATE_USERS settings. Created accounts are always role USER.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth import elevation
from auth.email import EmailSender
from auth.models import (
    IssuedToken,
    OAuthIdentity,
    RateLimitStatus,
    Role,
    Session,
    SessionArtifact,
    User,
    normalize_email,
)
from auth.oauth import GoogleOAuthBridge
from auth.otp import OtpService
from auth.passwords import authenticate, hash_password, validate_password_strength
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import issue_token
from core.config import Settings
from core.errors import Conflict, Forbidden, InputValidationError, InvalidCode, InvalidCredential, NotFound

logger = logging.getLogger("docaccess.auth.service")


class AuthService:
    def __init__(
        self,
        users: UserStore,
        otp: OtpService,
        sessions: SessionManager,
        oauth: GoogleOAuthBridge,
        email_sender: EmailSender,
        settings: Settings,
    ) -> None:
        self.users = users
        self.otp = otp
        self.sessions = sessions
        self.oauth = oauth
        self.email_sender = email_sender
        self.settings = settings

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str, remember_me: bool = False) -> tuple[User, SessionArtifact]:
        """Create a USER account with a password and sign it in. Raises Conflict on a taken email."""
        email = normalize_email(email)
        validate_password_strength(password)
        new_user = User(email=email, name=name, role=Role.USER, password_hash=hash_password(password))
        try:
            user_id = self.users.create_user(new_user)
        except IntegrityError as exc:
            raise Conflict("Email already registered.") from exc
        user = self._load(user_id)
        logger.info("Registered user %s", user.id)
        return user, self._start_session(user, remember_me=remember_me)

    def verify_credentials(self, email: str, password: str) -> User:
        """Check email/password without issuing anything. Raises InvalidCredential."""
        user = authenticate(self.users, email, password)
        if user is None:
            raise InvalidCredential()
        return user

    def login(self, email: str, password: str, remember_me: bool = False) -> tuple[User, SessionArtifact]:
        user = self.verify_credentials(email, password)
        return user, self._start_session(user, remember_me=remember_me)

    def issue_api_token(self, email: str, password: str) -> tuple[User, IssuedToken]:
        """Password login for non-browser clients: returns a bearer token, sets no cookie."""
        user = self.verify_credentials(email, password)
        self.users.update_last_login(user.id)
        return user, issue_token(user.id, user.email, user.role)

    # ------------------------------------------------------------------
    # One-time passcodes
    # ------------------------------------------------------------------

    def send_otp(self, email: str) -> RateLimitStatus:
        return self.otp.issue(email, self.email_sender)

    def verify_otp(
        self,
        email: str,
        code: str,
        remember_me: bool = False,
        create_if_absent: bool | None = None,
    ) -> tuple[User, SessionArtifact, bool]:
        """Consume an OTP and sign the email's account in.

        Returns (user, session artifact, is_new_user). Every code failure is
        the same InvalidCode. With create_if_absent False, an unknown email
        also fails with InvalidCode so the endpoint does not reveal whether an
        account exists.
        """
        email = normalize_email(email)
        if not self.otp.verify(email, code):
            raise InvalidCode()
        if create_if_absent is None:
            create_if_absent = self.settings.otp_auto_create_users

        user = self.users.get_by_email(email)
        is_new = False
        if user is None:
            if not create_if_absent:
                raise InvalidCode()
            user, is_new = self._create_passwordless(User(email=email, name=email.split("@")[0]))
        return user, self._start_session(user, remember_me=remember_me), is_new

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def oauth_sign_in(self, code: str, create_if_absent: bool | None = None) -> tuple[User, SessionArtifact]:
        """Complete the Google callback: exchange, fetch identity, reconcile, sign in."""
        tokens = await self.oauth.exchange_code(code)
        identity = await self.oauth.fetch_identity(tokens.access_token)
        user = self.reconcile_oauth_identity(identity, create_if_absent=create_if_absent)
        # OAuth users get persistent sessions: re-auth through the provider is one click.
        return user, self._start_session(user, remember_me=True)

    def reconcile_oauth_identity(self, identity: OAuthIdentity, create_if_absent: bool | None = None) -> User:
        """Map an external identity onto exactly one local account.

        Lookup order: linked external id, then email. A match by email links
        the external id if the account has none. Never creates a second
        account for an existing email; new accounts are role USER.
        """
        if not identity.email_verified:
            logger.warning("OAuth sign-in rejected: provider email not verified (%s)", identity.email)
            raise InvalidCredential("Email not verified with the provider.")
        if create_if_absent is None:
            create_if_absent = self.settings.oauth_auto_create_users

        user = self.users.get_by_external_id(identity.external_id) or self.users.get_by_email(identity.email)
        if user is None:
            if not create_if_absent:
                raise Forbidden("No account exists for this email.")
            user, _ = self._create_passwordless(
                User(
                    email=identity.email,
                    name=identity.name,
                    external_id=identity.external_id,
                    picture=identity.picture,
                )
            )
            return user

        updates: dict = {}
        if user.external_id is None:
            updates["external_id"] = identity.external_id
        elif user.external_id != identity.external_id:
            logger.warning("User %s is linked to a different external id; keeping the existing link", user.id)
        if identity.picture and identity.picture != user.picture:
            updates["picture"] = identity.picture
        if updates:
            self.users.update_user(user.id, **updates)
            user = self._load(user.id)
        return user

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def elevate(self, session: Session, code: str) -> SessionArtifact:
        """Step-up to ADMIN. Returns the re-signed session carrying the new role."""
        elevated = elevation.elevate(self.users, session, code, self.settings.admin_secret_code)
        return self.sessions.refresh(session, elevated.role)

    def set_role(self, actor: Session, user_id: str, role: Role) -> User:
        """Admin-only role change for another user. Removing ADMIN downgrades to USER."""
        if actor.user_id == user_id:
            raise InputValidationError("You cannot change your own role.")
        if self.users.get_by_id(user_id) is None:
            raise NotFound("User not found.")
        if Role(role) == Role.ADMIN:
            self.users.update_user(user_id, role=Role.ADMIN)
            logger.info("User %s promoted to ADMIN by %s", user_id, actor.user_id)
        else:
            elevation.revoke_admin(self.users, user_id)
        return self._load(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, user: User, remember_me: bool) -> SessionArtifact:
        self.users.update_last_login(user.id)
        return self.sessions.create(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            external_id=user.external_id,
            remember_me=remember_me,
        )

    def _create_passwordless(self, user: User) -> tuple[User, bool]:
        """Insert a USER account without a password. Returns (user, created)."""
        user.role = Role.USER
        try:
            user_id = self.users.create_user(user)
        except IntegrityError:
            # Lost a race with a concurrent sign-in for the same email.
            existing = self.users.get_by_email(user.email)
            if existing is None:
                raise
            return existing, False
        logger.info("Created passwordless user %s", user_id)
        return self._load(user_id), True

    def _load(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user
