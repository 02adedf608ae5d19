"""
API request and response models for the auth service REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire format is camelCase (refreshToken, newPassword, expiresIn, ...). Python
attributes stay snake_case; the alias generator does the translation both
ways, and populate_by_name lets tests build models with either spelling.

Validation lives here, before anything reaches the session manager:
  - name: non-empty after trimming
  - email: trimmed, basic address shape, max 255
  - password / newPassword: 6..255 characters, NOT trimmed
  - otp / refreshToken: non-empty, NOT trimmed (OTPs are matched exactly)
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Email = Annotated[str, StringConstraints(strip_whitespace=True, max_length=255, pattern=EMAIL_PATTERN)]
_Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
_NewPassword = Annotated[str, Field(min_length=6, max_length=255)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register."""

    name: _Name
    email: _Email
    password: _NewPassword


class VerifyOTPRequest(_CamelModel):
    """Request body for POST /api/v1/auth/verify-otp."""

    email: _Email
    otp: str = Field(min_length=1, max_length=32)


class LoginRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login."""

    email: _Email
    password: str = Field(min_length=1, max_length=255)


class RefreshTokenRequest(_CamelModel):
    """Request body for POST /api/v1/auth/refresh-token and /logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class ForgotPasswordRequest(_CamelModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    email: _Email


class ResetPasswordRequest(_CamelModel):
    """Request body for POST /api/v1/auth/reset-password."""

    email: _Email
    otp: str = Field(min_length=1, max_length=32)
    new_password: _NewPassword


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenPairResponse(_CamelModel):
    """Response for POST /login and POST /refresh-token.

    expires_in is the access token lifetime in seconds; refresh_token_expiry
    is the absolute UTC expiry of the refresh token.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_in: int
    refresh_token_expiry: datetime


class UserResponse(_CamelModel):
    """Public view of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.display_name,
            email=user.email,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class MeResponse(_CamelModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse


class ErrorResponse(BaseModel):
    """Flat error envelope returned on 4xx/5xx responses.

    code is a stable machine-readable identifier (e.g. TOKEN_EXPIRED) that
    clients branch on; message is for humans.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    code: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
