"""
auth/models.py -- Domain dataclasses for credential and session entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store persists them and the session manager does the work.

All datetimes are timezone-aware UTC. The store converts to and from ISO 8601
strings at the persistence boundary.

Layer rule: no imports from api/, client/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ACCESS_AUDIENCE = "access"
REFRESH_AUDIENCE = "refresh"


@dataclass
class User:
    """A verified account. Only created by a successful OTP verification.

    email is globally unique. password_hash and display_name are the only
    fields that change after creation.
    """

    display_name: str
    email: str
    password_hash: str
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PendingRegistration:
    """An unverified sign-up waiting for its OTP. Keyed by email.

    A repeat registration for the same email overwrites the record, which
    supersedes the earlier OTP.
    """

    email: str
    display_name: str
    password_hash: str
    otp_code: str
    otp_expires_at: datetime


@dataclass
class PasswordResetRequest:
    """An outstanding forgot-password OTP. Keyed by email."""

    email: str
    otp_code: str
    otp_expires_at: datetime


@dataclass
class RefreshTokenRecord:
    """Server-side record of an issued refresh token.

    token_value is the signed refresh token itself and doubles as the lookup
    key. A user may hold any number of records (one per live session).
    """

    user_id: int
    token_value: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, validated claim set of a signed token.

    email and display_name are only present on access tokens; refresh tokens
    carry the user id alone.
    """

    user_id: int
    audience: str
    expires_at: datetime
    email: str | None = None
    display_name: str | None = None
    token_id: str | None = None
