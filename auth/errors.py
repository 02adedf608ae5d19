"""
auth/errors.py -- Exception taxonomy for the session lifecycle.

Every failure the session manager can report is an AuthServiceError subclass.
The category bases (AuthenticationError, NotFoundError, ...) describe what
kind of failure it is; the concrete classes say which check failed. Each
class carries a stable machine-readable code.

The HTTP boundary (api/routes/v1/auth.py) owns the mapping from these classes
to status codes. This module knows nothing about HTTP.

Layer rule: no imports from api/, client/, or core/.
"""

from __future__ import annotations


class AuthServiceError(Exception):
    """Base class for all session lifecycle failures."""

    code: str = "AUTH_ERROR"
    default_message: str = "Authentication service error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


class ValidationError(AuthServiceError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid request."


class AuthenticationError(AuthServiceError):
    code = "AUTHENTICATION_FAILED"
    default_message = "Authentication failed."


class ConflictError(AuthServiceError):
    code = "CONFLICT"
    default_message = "Resource already exists."


class NotFoundError(AuthServiceError):
    code = "NOT_FOUND"
    default_message = "Resource not found."


class ExpiredError(AuthServiceError):
    """Something time-limited is past its expiry. The stale record is removed."""

    code = "EXPIRED"
    default_message = "Expired."


class InfrastructureError(AuthServiceError):
    """Store, notifier or hashing failure. Fatal to the request, never retried here."""

    code = "INTERNAL_ERROR"
    default_message = "An unexpected error occurred."


# ---------------------------------------------------------------------------
# Registration and password reset
# ---------------------------------------------------------------------------


class EmailAlreadyVerified(ConflictError):
    code = "EMAIL_ALREADY_VERIFIED"
    default_message = "User already registered. Please login."


class NoPendingRegistration(NotFoundError):
    code = "NO_PENDING_REGISTRATION"
    default_message = "No pending registration for this email."


class NoResetRequest(NotFoundError):
    code = "NO_RESET_REQUEST"
    default_message = "No password reset request found for this email."


class OTPExpired(ExpiredError):
    code = "OTP_EXPIRED"
    default_message = "OTP expired. Please request a new one."


class OTPMismatch(AuthenticationError):
    code = "INVALID_OTP"
    default_message = "Invalid OTP."


class SamePassword(ValidationError):
    code = "SAME_PASSWORD"
    default_message = "New password must be different from the current password."


# ---------------------------------------------------------------------------
# Credentials and tokens
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthenticationError):
    """Unknown email and wrong password both raise this, with one message."""

    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials."


class InvalidToken(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token."


class WrongAudience(AuthenticationError):
    code = "INVALID_TOKEN_TYPE"
    default_message = "Invalid token type."


class TokenExpired(ExpiredError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired."


class RefreshTokenNotFound(NotFoundError):
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Refresh token not found."


class RefreshTokenExpired(ExpiredError):
    code = "REFRESH_TOKEN_EXPIRED"
    default_message = "Refresh token expired. Please log in again."


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"
    default_message = "User not found."
