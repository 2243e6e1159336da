"""
tests/conftest.py -- Shared test fixtures for DocAccess identity tests.

This module provides:
  - user_store / otp_store: isolated in-memory SQLite stores per test
  - clock / session_clock: controllable clocks for OTP and session expiry
  - email_sender: fake transport that captures issued codes
  - google_transport: httpx.MockTransport standing in for Google
  - app_harness: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import: get_settings() is cached
on first call and auth.tokens / auth.passwords read it at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-session-signing-key-0123456789abcdef")
os.environ.setdefault("JWT_SECRET", "test-token-signing-key-fedcba9876543210xyz")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ADMIN_SECRET_CODE", "open-sesame-admin")

import httpx
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import DeliveryResult
from auth.oauth import GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL, GoogleOAuthBridge
from auth.otp import OtpService
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import OtpStore, UserStore
from core.config import Settings, get_settings

GOOGLE_PROFILE = {
    "id": "google-sub-1001",
    "email": "Grace@Example.com",
    "verified_email": True,
    "name": "Grace Hopper",
    "picture": "https://example.com/grace.png",
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Epoch-seconds clock for OtpService. Call to read, advance() to move."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSessionClock:
    """Aware-UTC datetime clock for SessionManager."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class FakeEmailSender:
    """Captures codes instead of delivering them. Set fail=True to simulate an outage."""

    fail: bool = False
    codes: dict[str, list[str]] = field(default_factory=dict)

    def send_otp(self, email: str, code: str) -> DeliveryResult:
        if self.fail:
            return DeliveryResult(success=False, error="simulated outage")
        self.codes.setdefault(email, []).append(code)
        return DeliveryResult(success=True)

    def last_code(self, email: str) -> str:
        return self.codes[email][-1]


def make_google_transport(profile: dict | None = None, token_status: int = 200, userinfo_status: int = 200):
    """Build an httpx.MockTransport emulating Google's token and userinfo endpoints.

    Every request is appended to transport.requests for assertions.
    """
    profile = GOOGLE_PROFILE if profile is None else profile
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        url = str(request.url)
        if request.method == "POST" and url == GOOGLE_TOKEN_URL:
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "ya29.test-token", "id_token": "id.test"})
        if request.method == "GET" and url == GOOGLE_USERINFO_URL:
            if userinfo_status != 200:
                return httpx.Response(userinfo_status, json={"error": "invalid_token"})
            return httpx.Response(200, json=profile)
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    transport.requests = requests
    return transport


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    """Unique named shared-memory SQLite URI so tests never share state."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """slowapi keeps one in-memory counter store for the process."""
    limiter.reset()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def google_settings(settings: Settings) -> Settings:
    return settings.model_copy(
        update={
            "google_client_id": "client-123.apps.googleusercontent.com",
            "google_client_secret": "client-secret-xyz",
            "google_redirect_uri": "http://localhost/api/v1/auth/google/callback",
        }
    )


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_url("test_users"))
    yield store
    store.close()


@pytest.fixture
def otp_store() -> Generator[OtpStore, None, None]:
    store = OtpStore(db_url=_memory_url("test_otp"))
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_clock() -> FakeSessionClock:
    return FakeSessionClock()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def google_transport() -> httpx.MockTransport:
    return make_google_transport()


@pytest.fixture
def make_transport():
    """Factory fixture for tests that need a Google transport with failure modes."""
    return make_google_transport


@pytest.fixture
def auth_service(
    user_store: UserStore,
    otp_store: OtpStore,
    clock: FakeClock,
    email_sender: FakeEmailSender,
    google_settings: Settings,
    google_transport: httpx.MockTransport,
) -> AuthService:
    """AuthService over isolated stores, a fake clock, fake email and fake Google."""
    return AuthService(
        users=user_store,
        otp=OtpService(otp_store, google_settings, clock=clock),
        sessions=SessionManager(google_settings),
        oauth=GoogleOAuthBridge(google_settings, transport=google_transport),
        email_sender=email_sender,
        settings=google_settings,
    )


# ---------------------------------------------------------------------------
# App harness -- TestClient over the real FastAPI app
# ---------------------------------------------------------------------------


@dataclass
class AppHarness:
    client: TestClient
    auth: AuthService
    users: UserStore
    email: FakeEmailSender
    clock: FakeClock


def _patch_lifespan(auth: AuthService, otp_store: OtpStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test services into app.state so routes see isolated
    stores and fakes rather than the production database and providers.
    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; shutdown calls .cancel() on it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = auth.users
        app.state.otp_store = otp_store
        app.state.otp = auth.otp
        app.state.sessions = auth.sessions
        app.state.oauth = auth.oauth
        app.state.auth = auth
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def app_harness(
    auth_service: AuthService,
    otp_store: OtpStore,
    email_sender: FakeEmailSender,
    clock: FakeClock,
) -> Generator[AppHarness, None, None]:
    """Yield an AppHarness around a live TestClient.

    base_url uses localhost because TrustedHostMiddleware only admits the
    configured hosts. follow_redirects=False so OAuth tests can assert on
    redirect locations.
    """
    app.router.lifespan_context = _patch_lifespan(auth_service, otp_store)
    with TestClient(app, base_url="http://localhost", follow_redirects=False) as client:
        yield AppHarness(
            client=client,
            auth=auth_service,
            users=auth_service.users,
            email=email_sender,
            clock=clock,
        )
