"""
api/main.py -- FastAPI application entry point for DocAccess identity.

Exposes the identity subsystem (password, OTP and Google sign-in, sessions,
bearer tokens, admin elevation) over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- short-lived Starlette session holding the OAuth
                              CSRF state between /auth/google and its callback

Lifespan builds the stores and services once and hangs them on app.state;
route handlers and auth.dependencies read them from there. Shutdown cancels
the OTP purge task and disposes both engines.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_user
from auth.email import build_email_sender
from auth.models import User
from auth.oauth import GoogleOAuthBridge
from auth.otp import OtpService
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import OtpStore, UserStore
from core.config import get_settings
from core.errors import AppError, Misconfiguration, RateLimited

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("docaccess.api")

settings = get_settings()

_PURGE_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired OTP codes and closed rate-limit windows every hour.

    Verification never accepts an expired code, so this is housekeeping only.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = app.state.otp.purge_expired()
        if removed:
            logger.info("Purged %d expired OTP rows", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup, release them on shutdown.

    Startup order: stores first (they create their tables), then the services
    that wrap them, then the AuthService that composes everything, then the
    purge task that needs app.state.otp.
    """
    logger.info("DocAccess API starting up")
    if settings.database_url:
        app.state.user_store = UserStore(db_url=settings.database_url)
        app.state.otp_store = OtpStore(db_url=settings.database_url)
    else:
        app.state.user_store = UserStore()
        app.state.otp_store = OtpStore()
    app.state.sessions = SessionManager(settings)
    app.state.otp = OtpService(app.state.otp_store, settings)
    app.state.oauth = GoogleOAuthBridge(settings)
    app.state.auth = AuthService(
        users=app.state.user_store,
        otp=app.state.otp,
        sessions=app.state.sessions,
        oauth=app.state.oauth,
        email_sender=build_email_sender(settings),
        settings=settings,
    )
    logger.info(
        "Auth initialized (google_oauth=%s, admin_elevation=%s)",
        app.state.oauth.is_configured(),
        bool(settings.admin_secret_code),
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    app.state.otp_store.close()
    logger.info("DocAccess API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DocAccess Identity API",
    description="Sign-in, sessions, bearer tokens and role management for DocAccess.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in docs are replaced by the auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST registered middleware
# is the outermost. Registered innermost-first here: Session -> SlowAPI ->
# CORS -> TrustedHost.
# ---------------------------------------------------------------------------

# Holds only the OAuth CSRF state. SameSite=lax so the cookie survives the
# top-level redirect back from the provider; the identity session itself is
# the separate docaccess_session cookie.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="docaccess_oauth",
    max_age=10 * 60,
    same_site="lax",
    https_only=settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires a session cookie or bearer token."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="DocAccess Identity API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires a session cookie or bearer token."""
    return get_redoc_html(openapi_url="/openapi.json", title="DocAccess Identity API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope:
#   {"success": false, "error": {"code": ..., "message": ...}}
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render any AppError with its own status and stable code.

    500-class errors are logged here with whatever server-side detail they
    carry; the body only ever holds the class's generic message.
    """
    if exc.status_code >= 500:
        detail = exc.detail if isinstance(exc, Misconfiguration) else exc.message
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, detail)
    response = _error_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Per-IP limit from slowapi. Retry-After falls back to one minute."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests. Please try again later.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 naming the first invalid field.

    Only the field location and pydantic's message are reported; submitted
    values (which may be passwords or codes) are never echoed.
    """
    errors = exc.errors()
    message = "Invalid request."
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else str(first.get("msg", message))
    return _error_response(400, "validation_error", message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured envelope for framework-raised HTTP errors (404 route, 405 method)."""
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) and not rate limited, so load
# balancers can always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database_ok = request.app.state.user_store.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
