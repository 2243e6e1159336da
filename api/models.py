"""
API request and response models for the DocAccess identity endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two,
and auth/ components never see raw request bodies.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Role, Session, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Email = Annotated[str, Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)]
# Upper bound only; the strength policy lives in auth.passwords.
_Password = Annotated[str, Field(min_length=1, max_length=128)]


class _EmailBody(BaseModel):
    """Base for bodies carrying an email: trimmed and lowercased before the pattern check."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailBody):
    """Body for POST /auth/register."""

    password: _Password
    name: str = Field(min_length=2, max_length=100)
    remember_me: bool = False


class LoginRequest(_EmailBody):
    """Body for POST /auth/login."""

    password: _Password
    remember_me: bool = False


class CredentialsRequest(_EmailBody):
    """Body for POST /auth/token and POST /auth/verify-credentials."""

    password: _Password


class SendOtpRequest(_EmailBody):
    """Body for POST /auth/send-otp."""


class VerifyOtpRequest(_EmailBody):
    """Body for POST /auth/verify-otp. Exact length is enforced by the OTP service."""

    code: str = Field(min_length=4, max_length=10, pattern=r"^\d+$")
    remember_me: bool = False


class AdminCodeRequest(BaseModel):
    """Body for POST /auth/verify-admin-code.

    No min_length: an empty code must still reach the elevation check so an
    unconfigured secret is reported as such.
    """

    code: str = Field(default="", max_length=256)


class RoleUpdate(BaseModel):
    """Body for PATCH /auth/users/{user_id}."""

    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: Role
    picture: Optional[str] = None
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            picture=user.picture,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class SessionUser(BaseModel):
    """Identity snapshot as carried by the session cookie."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: Role
    external_id: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionUser":
        return cls(
            id=session.user_id,
            email=session.email,
            name=session.name,
            role=session.role,
            external_id=session.external_id,
        )


class AuthResponse(BaseModel):
    """Returned by register/login: the cookie carries the session itself."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse


class SessionResponse(BaseModel):
    """GET /auth/session. authenticated=False is a normal answer, not an error."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    authenticated: bool
    user: Optional[SessionUser] = None
    expires_at: Optional[str] = None


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


class OtpSentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    sent: bool = True
    message: str = "Verification code sent successfully."
    email: str
    attempts: int
    limit: int


class OtpVerifiedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserResponse
    is_new_user: bool
    requires_admin_verification: bool


class ElevationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Admin verification successful."
    user: SessionUser


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ProvidersResponse(BaseModel):
    """GET /auth/providers. Empty list when no provider is configured."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    providers: list[OAuthProviderInfo]


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    users: list[UserResponse]


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    status: str = "healthy"
    version: str
    components: dict[str, str]
