"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for DocAccess happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. SECRET_KEY and JWT_SECRET are required at
      startup; everything else security-critical (ADMIN_SECRET_CODE, Google
      OAuth credentials, Resend credentials) is checked at first use through
      Settings.require().

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright. HMAC-SHA256,
       session signing and JWT signing all rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       JWT_SECRET is a hard startup failure. Dev mode generates random keys
       with a warning.

  [M8] SECRET_KEY (sessions, OTP hashing) and JWT_SECRET (bearer tokens) must
       differ, so a leaked token key cannot forge browser sessions.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import Misconfiguration

logger = logging.getLogger("docaccess.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    jwt_secret: str = ""
    database_url: str = ""
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions and bearer tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_ttl_seconds: int = 30 * 60
    remember_me_ttl_seconds: int = 7 * 24 * 60 * 60
    token_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # One-time passcodes
    # ------------------------------------------------------------------

    otp_length: int = 6
    otp_ttl_seconds: int = 10 * 60
    otp_max_per_window: int = 5
    otp_window_seconds: int = 10 * 60
    otp_max_attempts: int = 5
    otp_auto_create_users: bool = True

    # ------------------------------------------------------------------
    # Admin elevation -- empty means "not configured"; elevation fails closed
    # ------------------------------------------------------------------

    admin_secret_code: str = ""

    # ------------------------------------------------------------------
    # Google OAuth (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    oauth_timeout_seconds: float = 10.0
    oauth_auto_create_users: bool = True
    oauth_success_redirect: str = "/dashboard"
    oauth_failure_redirect: str = "/sign-in"

    # ------------------------------------------------------------------
    # Outbound email (Resend)
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    resend_from_email: str = ""

    # ------------------------------------------------------------------
    # Rate limiting (per client IP, credential endpoints)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the SECRET_KEY / JWT_SECRET policy [M6][M7][M8].

        Dev mode (DEBUG=true): auto-generate random keys with a warning.
            Sessions and tokens will not survive restart.

        Production mode: refuse to start if either key is missing.
        """
        for field_name in ("secret_key", "jwt_secret"):
            value = getattr(self, field_name)
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning(
                        "Using auto-generated %s. Sessions and tokens will not persist across restarts.",
                        field_name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field_name)) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.secret_key == self.jwt_secret:
            raise ValueError("JWT_SECRET must differ from SECRET_KEY.")
        return self

    def require(self, field_name: str) -> str:
        """Return a configured string setting or fail closed.

        Used for settings that are optional at startup but mandatory for a
        specific flow (ADMIN_SECRET_CODE, Google OAuth, Resend). A blank value
        raises Misconfiguration and is logged loudly -- the request gets a
        500, never a permissive default.
        """
        value = getattr(self, field_name, "")
        if not isinstance(value, str) or not value.strip():
            logger.error("Required setting %s is not configured", field_name.upper())
            raise Misconfiguration(f"{field_name.upper()} is not configured")
        return value


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
