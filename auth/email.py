"""
auth/email.py -- Outbound email transport for one-time passcodes.

The OTP service only depends on the EmailSender protocol:
    send_otp(email, code) -> DeliveryResult

A failed delivery is reported as DeliveryResult(success=False, error=...)
rather than raised, so the caller decides how to surface it (the OTP service
raises EmailDeliveryFailed, which keeps "code sent" from being claimed
falsely). The error string is for server logs only.

Transports:
  ResendEmailSender  -- Resend HTTP API via httpx (production).
  LoggingEmailSender -- writes a delivery notice to the log without the code
                        (development / DEBUG mode).
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from auth.models import DeliveryResult
from core.config import Settings

logger = logging.getLogger("docaccess.auth.email")

RESEND_API_URL = "https://api.resend.com/emails"

_SUBJECT = "Your DocAccess verification code"


class EmailSender(Protocol):
    def send_otp(self, email: str, code: str) -> DeliveryResult: ...


def render_otp_text(code: str, ttl_minutes: int) -> str:
    return (
        f"Your DocAccess verification code is: {code}\n\n"
        f"This code expires in {ttl_minutes} minutes. "
        "If you did not request it, you can ignore this email."
    )


def render_otp_html(code: str, ttl_minutes: int) -> str:
    return (
        "<div style=\"font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto;\">"
        "<h2>Verify your email</h2>"
        "<p>Use this code to finish signing in to DocAccess:</p>"
        f'<p style="font-size: 32px; letter-spacing: 8px; font-weight: bold;">{code}</p>'
        f"<p>This code expires in {ttl_minutes} minutes. If you did not request it, ignore this email.</p>"
        "</div>"
    )


class ResendEmailSender:
    """Send OTP emails through the Resend HTTP API.

    API key and sender address are checked at first use via Settings.require(),
    so a half-configured deployment fails with Misconfiguration instead of
    silently dropping codes.
    """

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def send_otp(self, email: str, code: str) -> DeliveryResult:
        api_key = self._settings.require("resend_api_key")
        sender = self._settings.require("resend_from_email")
        ttl_minutes = max(1, self._settings.otp_ttl_seconds // 60)
        payload = {
            "from": sender,
            "to": [email],
            "subject": _SUBJECT,
            "html": render_otp_html(code, ttl_minutes),
            "text": render_otp_text(code, ttl_minutes),
        }
        try:
            with httpx.Client(transport=self._transport, timeout=self._settings.oauth_timeout_seconds) as client:
                resp = client.post(RESEND_API_URL, json=payload, headers={"Authorization": f"Bearer {api_key}"})
        except httpx.HTTPError as exc:
            logger.error("Resend request failed: %s", exc)
            return DeliveryResult(success=False, error=str(exc))
        if resp.status_code >= 300:
            logger.error("Resend rejected OTP email (status %d): %s", resp.status_code, resp.text)
            return DeliveryResult(success=False, error=f"resend status {resp.status_code}")
        logger.info("OTP email accepted by Resend (id=%s)", resp.json().get("id"))
        return DeliveryResult(success=True)


class LoggingEmailSender:
    """Development transport. Records that a code was issued; never logs the code."""

    def __init__(self) -> None:
        self.sent: list[str] = []

    def send_otp(self, email: str, code: str) -> DeliveryResult:
        self.sent.append(email)
        logger.info("OTP issued for %s (logging transport, not delivered)", email)
        return DeliveryResult(success=True)


def build_email_sender(settings: Settings) -> EmailSender:
    """Pick the transport: Resend when its API key is set, else logging in DEBUG.

    Production without Resend credentials still gets ResendEmailSender, whose
    first send raises Misconfiguration.
    """
    if settings.resend_api_key or not settings.debug:
        return ResendEmailSender(settings)
    logger.warning("RESEND_API_KEY not set -- OTP emails will be logged, not delivered")
    return LoggingEmailSender()
