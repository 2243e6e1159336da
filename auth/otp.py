"""
auth/otp.py -- One-time passcode service for email verification.

State machine per email:
    NONE -> ISSUED -> { VERIFIED | EXPIRED | RATE_LIMITED }

Security design decisions:
  Generation: secrets.randbelow() -- a CSPRNG. A predictable code is a direct
       authentication bypass, so random.* is never acceptable here.

  Storage: only HMAC-SHA256(SECRET_KEY, "email:code") is persisted. The hash
       is deterministic, so the consume step can match on it inside a single
       conditional DELETE (see OtpStore.delete_on_match). A DB reader cannot
       recover a code, and a hash for one email is useless for another.

  Single use: verify() succeeds only when the DELETE removed the row. A replay
       of the same code finds no row and fails.

  Brute force: every guess first spends one attempt in a single UPDATE that
       also checks the cap (OtpStore.reserve_attempt); only a guess that got an
       attempt is compared. Parallel guesses therefore cannot outrun the cap.
       Once OTP_MAX_ATTEMPTS are spent a new code must be requested (which
       itself is rate-limited).

  Enumeration: missing, expired, exhausted and mismatched codes all produce the
       same False. Callers must map False to one generic error.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable

from auth.email import EmailSender
from auth.models import RateLimitStatus, normalize_email
from auth.store import OtpStore
from core.config import Settings
from core.errors import EmailDeliveryFailed, RateLimited

logger = logging.getLogger("docaccess.auth.otp")


class OtpService:
    """Generate, store, rate-limit and verify one-time passcodes.

    Args:
        store:    OtpStore holding codes and the issuance counter.
        settings: Settings (OTP_* values and SECRET_KEY for hashing).
        clock:    Returns epoch seconds. Injected so tests can move time.
    """

    def __init__(self, store: OtpStore, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def generate(self) -> str:
        """Return a fixed-length numeric code, zero-padded (e.g. '004817')."""
        length = self._settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def hash_code(self, email: str, code: str) -> str:
        message = f"{normalize_email(email)}:{code}".encode()
        return hmac.new(self._settings.secret_key.encode(), message, hashlib.sha256).hexdigest()

    def check_rate_limit(self, email: str) -> RateLimitStatus:
        """Count one issuance attempt for email and report whether the limit is exceeded.

        Check and increment are a single atomic store operation, so K
        concurrent callers for one email see K distinct counts and at most
        OTP_MAX_PER_WINDOW of them get exceeded=False.
        """
        now = self._clock()
        window = self._settings.otp_window_seconds
        count, window_start = self._store.increment_with_window(email, now, window)
        limit = self._settings.otp_max_per_window
        retry_after = max(1, int(window_start + window - now))
        return RateLimitStatus(exceeded=count > limit, count=count, limit=limit, retry_after=retry_after)

    def store(self, email: str, code: str) -> None:
        """Persist code as the only live code for email (older codes stop working)."""
        now = self._clock()
        self._store.upsert_code(email, self.hash_code(email, code), now, now + self._settings.otp_ttl_seconds)

    def verify(self, email: str, code: str) -> bool:
        """Consume the code for email. True exactly once per issued code."""
        length = self._settings.otp_length
        if len(code) != length or not code.isdigit():
            return False
        now = self._clock()
        stored_hash = self._store.reserve_attempt(email, now, self._settings.otp_max_attempts)
        if stored_hash is None or not hmac.compare_digest(stored_hash, self.hash_code(email, code)):
            logger.info("OTP verification failed for %s", normalize_email(email))
            return False
        return self._store.delete_on_match(email, stored_hash, now)

    def purge_expired(self) -> int:
        return self._store.purge_expired(self._clock(), self._settings.otp_window_seconds)

    # ------------------------------------------------------------------
    # Issuance flow
    # ------------------------------------------------------------------

    def issue(self, email: str, sender: EmailSender) -> RateLimitStatus:
        """Rate-limit, generate, store and deliver a code for email.

        Raises:
            RateLimited:         the per-email window is exhausted; nothing is
                                 generated or sent.
            EmailDeliveryFailed: the transport reported failure; the stored
                                 code is live but the caller must not claim
                                 it was sent.
        """
        email = normalize_email(email)
        status = self.check_rate_limit(email)
        if status.exceeded:
            logger.warning("OTP rate limit exceeded for %s (%d/%d)", email, status.count, status.limit)
            raise RateLimited(
                f"Too many requests. Please try again in {max(1, status.retry_after // 60)} minutes.",
                retry_after=status.retry_after,
            )
        code = self.generate()
        self.store(email, code)
        result = sender.send_otp(email, code)
        if not result.success:
            logger.error("OTP delivery failed for %s: %s", email, result.error)
            raise EmailDeliveryFailed()
        logger.info("OTP issued for %s (%d/%d in window)", email, status.count, status.limit)
        return status
