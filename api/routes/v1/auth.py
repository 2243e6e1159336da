"""
api/routes/v1/auth.py -- Identity REST endpoints.

Routes:
  POST   /api/v1/auth/register                 -- create USER account; sets session cookie (201)
  POST   /api/v1/auth/login                    -- password login; sets session cookie
  POST   /api/v1/auth/token                    -- password login for API clients; returns bearer token
  POST   /api/v1/auth/verify-credentials       -- password check only (first step of 2-step sign-in)
  POST   /api/v1/auth/logout                   -- clears cookie
  GET    /api/v1/auth/session                  -- current session snapshot, or authenticated=false
  GET    /api/v1/auth/me                       -- stored identity (session cookie or bearer token)
  GET    /api/v1/auth/providers                -- configured OAuth providers (public)
  POST   /api/v1/auth/send-otp                 -- email a one-time code (per-email rate limit)
  POST   /api/v1/auth/verify-otp               -- consume code; sets session cookie
  GET    /api/v1/auth/google                   -- 302 to Google consent screen
  GET    /api/v1/auth/google/callback          -- 302 back into the app with a session cookie
  POST   /api/v1/auth/verify-admin-code        -- step-up to ADMIN (requires session)
  GET    /api/v1/auth/users                    -- list users (admin only)
  PATCH  /api/v1/auth/users/{id}               -- change role (admin only, not self)
  DELETE /api/v1/auth/users/{id}/roles/admin   -- downgrade to USER (admin only, not self)

Security:
  [H2] Credential endpoints are rate-limited per IP (LOGIN_RATE_LIMIT). The
       @limiter.limit decorator sits BELOW @router: the router must register
       the wrapper, otherwise SlowAPIMiddleware skips the route and the limit
       never fires.
  [C1] Password checks go through AuthService -> auth.passwords.authenticate(),
       which is timing-equalized. Never inline a store lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries a credential.
  OAuth callback failures redirect with a stable ?error=<code>; provider
  detail stays in the server log.

Handlers are thin: parse the body, call one AuthService method, write the
cookie. Failures are AppError subclasses rendered by api/main.py.
"""

import hmac
import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import CREDENTIAL_LIMIT, limiter
from api.models import (
    AdminCodeRequest,
    AuthResponse,
    CredentialsRequest,
    ElevationResponse,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    OtpSentResponse,
    OtpVerifiedResponse,
    ProvidersResponse,
    RegisterRequest,
    RoleUpdate,
    SendOtpRequest,
    SessionResponse,
    SessionUser,
    TokenResponse,
    UserListResponse,
    UserResponse,
    VerifyOtpRequest,
)
from auth.dependencies import get_current_session, get_current_user, require_admin, try_get_session
from auth.models import Role, Session, SessionArtifact, User
from auth.service import AuthService
from core.config import get_settings
from core.errors import AppError

logger = logging.getLogger("docaccess.api.auth")

# Auth policy:
# - register, login, token, verify-credentials, logout, session, providers,
#   send-otp, verify-otp, google, google/callback: public
# - me:                 session cookie OR bearer token (get_current_user)
# - verify-admin-code:  session cookie (get_current_session)
# - users*:             ADMIN session (require_admin)
router = APIRouter()

_OAUTH_STATE_KEY = "oauth_state"


def _auth(request: Request) -> AuthService:
    return request.app.state.auth


def _json(model, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=model.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _with_session(request: Request, resp: JSONResponse, artifact: SessionArtifact) -> JSONResponse:
    request.app.state.sessions.set_cookie(resp, artifact)
    return resp


# ---------------------------------------------------------------------------
# Password sign-in
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(CREDENTIAL_LIMIT)  # [H2] below @router so FastAPI registers the limited wrapper
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a USER account and sign it in. 409 if the email is taken."""
    user, artifact = _auth(request).register(body.email, body.password, body.name, remember_me=body.remember_me)
    resp = _json(AuthResponse(user=UserResponse.from_user(user)), status_code=201)
    return _with_session(request, resp, artifact)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password produce the same 401 invalid_credentials.
    """
    user, artifact = _auth(request).login(body.email, body.password, remember_me=body.remember_me)
    return _with_session(request, _json(AuthResponse(user=UserResponse.from_user(user))), artifact)


@router.post("/auth/token", response_model=TokenResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def token(request: Request, body: CredentialsRequest) -> JSONResponse:
    """Exchange email and password for a bearer token. No cookie is set."""
    user, issued = _auth(request).issue_api_token(body.email, body.password)
    return _json(TokenResponse(token=issued.token, expires_in=issued.expires_in, user=UserResponse.from_user(user)))


@router.post("/auth/verify-credentials", response_model=AuthResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def verify_credentials(request: Request, body: CredentialsRequest) -> JSONResponse:
    """Check email and password without signing in. The client follows up with send-otp."""
    user = _auth(request).verify_credentials(body.email, body.password)
    return _json(AuthResponse(user=UserResponse.from_user(user)))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Tell the browser to discard its session cookie.

    Sessions are stateless, so a copy of the cookie taken before logout stays
    valid until it expires.
    """
    request.session.pop(_OAUTH_STATE_KEY, None)
    resp = _json(MessageResponse(message="Signed out."))
    request.app.state.sessions.destroy(resp)
    return resp


# ---------------------------------------------------------------------------
# Session and identity
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=SessionResponse)
def session_info(session: Session | None = Depends(try_get_session)) -> JSONResponse:
    """Return the session snapshot. Not being signed in is a 200 with authenticated=false."""
    if session is None:
        return _json(SessionResponse(authenticated=False))
    return _json(
        SessionResponse(
            authenticated=True,
            user=SessionUser.from_session(session),
            expires_at=session.expires_at.isoformat(),
        )
    )


@router.get("/auth/me", response_model=AuthResponse)
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the stored account behind the session cookie or bearer token."""
    return _json(AuthResponse(user=UserResponse.from_user(current_user)))


@router.get("/auth/providers", response_model=ProvidersResponse)
def list_providers(request: Request) -> ProvidersResponse:
    """Return the configured OAuth providers.

    Public endpoint -- the sign-in page calls this to decide which buttons to
    render. Empty when GOOGLE_* settings are absent.
    """
    oauth = request.app.state.oauth
    providers = [OAuthProviderInfo(name=oauth.name, label=oauth.label)] if oauth.is_configured() else []
    return ProvidersResponse(providers=providers)


# ---------------------------------------------------------------------------
# One-time passcodes
# ---------------------------------------------------------------------------


@router.post("/auth/send-otp", response_model=OtpSentResponse)
def send_otp(request: Request, body: SendOtpRequest) -> JSONResponse:
    """Email a fresh code. 429 with Retry-After once the per-email window is used up."""
    status = _auth(request).send_otp(body.email)
    return _json(OtpSentResponse(email=body.email, attempts=status.count, limit=status.limit))


@router.post("/auth/verify-otp", response_model=OtpVerifiedResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def verify_otp(request: Request, body: VerifyOtpRequest) -> JSONResponse:
    """Consume a code and sign the account in, creating it when allowed."""
    user, artifact, is_new = _auth(request).verify_otp(body.email, body.code, remember_me=body.remember_me)
    resp = _json(
        OtpVerifiedResponse(
            user=UserResponse.from_user(user),
            is_new_user=is_new,
            requires_admin_verification=not user.is_admin,
        )
    )
    return _with_session(request, resp, artifact)


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


def _failure_redirect(error_code: str) -> RedirectResponse:
    base = get_settings().oauth_failure_redirect
    separator = "&" if "?" in base else "?"
    return RedirectResponse(f"{base}{separator}{urlencode({'error': error_code})}", status_code=302)


@router.get("/auth/google")
def google_login(request: Request) -> RedirectResponse:
    """Start the authorization-code flow. The CSRF state rides in the Starlette session."""
    state = secrets.token_urlsafe(32)
    url = request.app.state.oauth.build_authorization_url(state)
    request.session[_OAUTH_STATE_KEY] = state
    return RedirectResponse(url, status_code=302)


@router.get("/auth/google/callback")
async def google_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """Finish Google sign-in and redirect into the app.

    Every failure redirects to OAUTH_FAILURE_REDIRECT with a stable error
    code; nothing from the provider is echoed to the browser.
    """
    expected = request.session.pop(_OAUTH_STATE_KEY, None)
    if error:
        logger.info("Google sign-in cancelled or denied by provider")
        return _failure_redirect("oauth_denied")
    if not code or not state or not expected or not hmac.compare_digest(state, expected):
        logger.warning("Google callback rejected: missing code or state mismatch")
        return _failure_redirect("invalid_state")

    try:
        user, artifact = await _auth(request).oauth_sign_in(code)
    except AppError as exc:
        logger.warning("Google sign-in failed: %s", exc.code)
        return _failure_redirect(exc.code)

    logger.info("Google sign-in for user %s", user.id)
    resp = RedirectResponse(get_settings().oauth_success_redirect, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    request.app.state.sessions.set_cookie(resp, artifact)
    return resp


# ---------------------------------------------------------------------------
# Admin elevation and role management
# ---------------------------------------------------------------------------


@router.post("/auth/verify-admin-code", response_model=ElevationResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def verify_admin_code(
    request: Request,
    body: AdminCodeRequest,
    session: Session = Depends(get_current_session),
) -> JSONResponse:
    """Step up the signed-in user to ADMIN and re-issue the session cookie."""
    artifact = _auth(request).elevate(session, body.code)
    resp = _json(ElevationResponse(user=SessionUser.from_session(artifact.session)))
    return _with_session(request, resp, artifact)


@router.get("/auth/users", response_model=UserListResponse)
def list_users(request: Request, admin: Session = Depends(require_admin)) -> UserListResponse:
    """List all user accounts. Admin only."""
    users = request.app.state.user_store.list_users()
    return UserListResponse(users=[UserResponse.from_user(u) for u in users])


@router.patch("/auth/users/{user_id}", response_model=AuthResponse)
def update_user_role(
    request: Request,
    user_id: str,
    body: RoleUpdate,
    admin: Session = Depends(require_admin),
) -> AuthResponse:
    """Set another user's role. Admins cannot change their own role."""
    user = _auth(request).set_role(admin, user_id, body.role)
    return AuthResponse(user=UserResponse.from_user(user))


@router.delete("/auth/users/{user_id}/roles/admin", response_model=AuthResponse)
def remove_admin_role(
    request: Request,
    user_id: str,
    admin: Session = Depends(require_admin),
) -> AuthResponse:
    """Remove ADMIN from a user. The user is downgraded to USER, never left without a role."""
    user = _auth(request).set_role(admin, user_id, Role.USER)
    return AuthResponse(user=UserResponse.from_user(user))
