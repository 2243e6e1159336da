"""
core/errors.py -- Error taxonomy for the identity subsystem.

Every failure that can reach an HTTP client is one of these classes. Each
carries a stable machine-readable code, a minimal human message, and the HTTP
status the API layer renders it with. api/main.py registers a single
exception handler for AppError; route handlers never build error responses
for these cases by hand.

Messages are deliberately generic. Internal detail (provider error bodies,
stack traces, which of several credential checks failed) is logged server-side
by the raising module and never placed on the exception message.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for all client-visible DocAccess errors."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InputValidationError(AppError):
    """Malformed or policy-violating input."""

    status_code = 400
    code = "validation_error"
    default_message = "Invalid input."


class InvalidCredential(AppError):
    """Wrong password, code, or secret. Always generic."""

    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid email or password."


class InvalidCode(InvalidCredential):
    """One-time code or admin code did not verify."""

    code = "invalid_code"
    default_message = "Invalid or expired verification code."


class Unauthorized(AppError):
    """No session, or the session has expired."""

    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class Forbidden(AppError):
    """Authenticated, but the role or ownership check failed."""

    status_code = 403
    code = "forbidden"
    default_message = "You do not have access to this resource."


class AdminRequired(Forbidden):
    code = "admin_required"
    default_message = "Admin access required."


class NotFound(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class Conflict(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class RateLimited(AppError):
    """Too many requests for a key (e.g. OTP issuance for one email)."""

    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: str | None = None, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ExternalServiceError(AppError):
    """An upstream dependency (OAuth provider, email transport) failed."""

    status_code = 500
    code = "external_service_error"
    default_message = "An external service failed. Please try again."


class ExchangeFailed(ExternalServiceError):
    code = "oauth_exchange_failed"
    default_message = "Authentication with the provider failed."


class IdentityFetchFailed(ExternalServiceError):
    code = "oauth_identity_failed"
    default_message = "Could not retrieve your profile from the provider."


class EmailDeliveryFailed(ExternalServiceError):
    code = "email_delivery_failed"
    default_message = "Failed to send verification code."


class Misconfiguration(AppError):
    """A required secret or setting is absent. Fails closed."""

    status_code = 500
    code = "misconfiguration"
    default_message = "Service is not configured."

    def __init__(self, detail: str | None = None) -> None:
        # detail is for server logs only; the client sees default_message.
        super().__init__(self.default_message)
        self.detail = detail or ""
