"""
auth/oauth.py -- OAuth Bridge for Google sign-in (authorization-code flow).

Three single-shot steps, driven by the /auth/google routes:
  1. build_authorization_url(state) -- deterministic redirect URL
  2. exchange_code(code)            -- POST to the token endpoint
  3. fetch_identity(access_token)   -- GET the userinfo profile

Security notes:
  [H1] Email verification is mandatory. fetch_identity() reports
       email_verified; AuthService.oauth_sign_in() rejects unverified emails.
       An unverified address could belong to someone else.

  CSRF: the caller supplies `state`, stores it in the Starlette session
  (SessionMiddleware) before redirecting, and compares it on callback.

  Provider error bodies are logged here and never placed on the raised
  exception -- clients only ever see ExchangeFailed / IdentityFetchFailed's
  generic message.

  Missing GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET / GOOGLE_REDIRECT_URI is a
  Misconfiguration raised at first use (fail closed).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import httpx
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from auth.models import OAuthIdentity, OAuthTokens, normalize_email
from core.config import Settings
from core.errors import ExchangeFailed, IdentityFetchFailed

logger = logging.getLogger("docaccess.auth.oauth")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = ["openid", "email", "profile"]


class GoogleOAuthBridge:
    """Drive the Google authorization-code exchange.

    Args:
        settings:  Settings with the GOOGLE_* credentials and timeout.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    name = "google"
    label = "Google"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def is_configured(self) -> bool:
        s = self._settings
        return bool(s.google_client_id and s.google_client_secret and s.google_redirect_uri)

    def build_authorization_url(self, state: str) -> str:
        """Return the provider consent URL.

        access_type=offline + prompt=consent make Google return a refresh
        token on every consent, not only the first one.
        """
        return prepare_grant_uri(
            GOOGLE_AUTHORIZE_URL,
            client_id=self._settings.require("google_client_id"),
            response_type="code",
            redirect_uri=self._settings.require("google_redirect_uri"),
            scope=GOOGLE_SCOPE,
            state=state,
            access_type="offline",
            prompt="consent",
        )

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Trade an authorization code for tokens. Raises ExchangeFailed on any non-2xx."""
        form = {
            "code": code,
            "client_id": self._settings.require("google_client_id"),
            "client_secret": self._settings.require("google_client_secret"),
            "redirect_uri": self._settings.require("google_redirect_uri"),
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                resp = await client.post(GOOGLE_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            logger.error("Google token exchange request failed: %s", exc)
            raise ExchangeFailed() from exc
        if not resp.is_success:
            logger.error("Google token exchange failed (status %d): %s", resp.status_code, resp.text)
            raise ExchangeFailed()
        body = resp.json()
        access_token = body.get("access_token")
        if not access_token:
            logger.error("Google token response had no access_token")
            raise ExchangeFailed()
        return OAuthTokens(access_token=access_token, id_token=body.get("id_token"))

    async def fetch_identity(self, access_token: str) -> OAuthIdentity:
        """Fetch the caller's Google profile. Raises IdentityFetchFailed on any non-2xx."""
        try:
            async with self._client() as client:
                resp = await client.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            logger.error("Google userinfo request failed: %s", exc)
            raise IdentityFetchFailed() from exc
        if not resp.is_success:
            logger.error("Google userinfo failed (status %d): %s", resp.status_code, resp.text)
            raise IdentityFetchFailed()
        return _parse_identity(resp.json())

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._settings.oauth_timeout_seconds)


def _parse_identity(profile: dict) -> OAuthIdentity:
    """Normalize the v2 userinfo shape (id/verified_email) and the OIDC shape (sub/email_verified)."""
    external_id = profile.get("id") or profile.get("sub")
    email = profile.get("email")
    if not external_id or not email:
        logger.error("Google userinfo missing id or email (keys: %s)", sorted(profile))
        raise IdentityFetchFailed()
    email = normalize_email(email)
    verified = profile.get("verified_email", profile.get("email_verified", False))
    return OAuthIdentity(
        external_id=str(external_id),
        email=email,
        name=profile.get("name") or email.split("@")[0],
        email_verified=bool(verified),
        picture=profile.get("picture"),
    )
