"""
API request and response models for SimpleAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model has a password, digest, verifier, or session token field.
The session token travels only in the HttpOnly cookie.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Current

# bcrypt's 72-byte limit is enforced by the Authenticator with a readable
# message; this cap only stops absurd request bodies.
_PASSWORD_MAX = 255


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/session."""

    email_address: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/passwords."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email_address: str = Field(min_length=1, max_length=255)


class PasswordResetSubmit(BaseModel):
    """Request body for POST /api/v1/passwords/{token}.

    Length and confirmation rules are checked by the Authenticator so the API
    and the HTML form report the same reasons.
    """

    password: str = Field(max_length=_PASSWORD_MAX)
    password_confirmation: str = Field(max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """The authenticated user and the session that carries them."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    email_address: str
    session_id: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_current(cls, current: Current) -> "SessionResponse":
        """Build the response from an authenticated request context."""
        session = current.session
        user = current.user
        return cls(
            user_id=user.id,
            email_address=user.email_address,
            session_id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at.isoformat() if session.created_at else None,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenStatusResponse(BaseModel):
    """Response for GET /api/v1/passwords/{token}."""

    model_config = ConfigDict(frozen=True)

    valid: bool


class ErrorDetail(BaseModel):
    """Inner error object of the uniform error envelope."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {...}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
