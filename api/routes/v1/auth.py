"""
api/routes/v1/auth.py -- Registration, session and password reset REST endpoints.

Routes:
  POST /api/v1/auth/register         -- start registration, email an OTP (201)
  POST /api/v1/auth/verify-otp       -- consume the OTP, create the user
  POST /api/v1/auth/login            -- issue an access/refresh pair
  POST /api/v1/auth/refresh-token    -- rotate the refresh token, issue a new pair
  POST /api/v1/auth/logout           -- revoke one refresh token (idempotent)
  POST /api/v1/auth/forgot-password  -- email a reset OTP (constant response)
  POST /api/v1/auth/reset-password   -- consume the reset OTP, set a new password
  GET  /api/v1/auth/me               -- current user (Bearer access token)

Error mapping:
  Session manager failures raised from these handlers reach the
  AuthServiceError handler in api/main.py, which answers 400 {message, code}
  (500 for InfrastructureError). /refresh-token is the exception: it maps
  its failures itself with refresh_error() so clients get 401 for an
  expired refresh token (log in again) and 403 for everything else.

Security:
  POST /login, /register, /verify-otp, /forgot-password and /reset-password
  are rate-limited per IP. @router.post must sit ABOVE @limiter.limit: the
  router has to register the limiter's wrapper, because SlowAPIMiddleware
  skips decorated routes and leaves the check to that wrapper.
  Cache-Control: no-store on every response that carries tokens.
  /forgot-password answers identically for known and unknown emails.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    UserResponse,
    VerifyOTPRequest,
)
from auth.dependencies import bearer_token, get_current_user, get_session_manager
from auth.errors import (
    AuthServiceError,
    InfrastructureError,
    InvalidToken,
    RefreshTokenExpired,
    RefreshTokenNotFound,
    UserNotFound,
    WrongAudience,
)
from auth.models import ACCESS_AUDIENCE, User
from auth.sessions import SessionManager, SessionTokens
from core.config import get_settings

_settings = get_settings()

FORGOT_PASSWORD_MESSAGE = "If that email exists, an OTP has been sent."

# Auth policy:
# - every POST route is public; credentials travel in the body
# - GET /auth/me requires a Bearer access token (get_current_user)
# - POST /auth/refresh-token accepts an optional Bearer access token; when
#   present it must be an access token belonging to the refresh token's user
router = APIRouter()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=MessageResponse, status_code=201)
@limiter.limit(_settings.otp_rate_limit)
def register(
    request: Request,
    body: RegisterRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Create or replace the pending registration and email its OTP."""
    sessions.register(body.name, body.email, body.password)
    return _message(201, "Registration initiated. OTP sent to your email.")


@router.post("/auth/verify-otp", response_model=MessageResponse)
@limiter.limit(_settings.otp_rate_limit)  # OTP guessing
def verify_otp(
    request: Request,
    body: VerifyOTPRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Consume the registration OTP and create the permanent account."""
    sessions.verify_otp(body.email, body.otp)
    return _message(200, "Registration verified successfully. You can now log in.")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenPairResponse)
@limiter.limit(_settings.login_rate_limit)  # brute-force mitigation
def login(
    request: Request,
    body: LoginRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Authenticate with email and password; return a fresh token pair.

    Unknown email and wrong password produce the same INVALID_CREDENTIALS
    error so the response does not reveal whether the email is registered.
    """
    return _token_response(sessions.login(body.email, body.password))


@router.post("/auth/refresh-token", response_model=TokenPairResponse)
def refresh_token(
    request: Request,
    body: RefreshTokenRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Rotate a refresh token. The presented token is single-use."""
    expected_user_id: int | None = None
    access = bearer_token(request)
    if access is not None:
        try:
            claims = sessions.issuer.peek(access)
        except InvalidToken as exc:
            raise refresh_error(exc) from exc
        if claims.audience != ACCESS_AUDIENCE:
            raise refresh_error(WrongAudience())
        expected_user_id = claims.user_id

    try:
        tokens = sessions.refresh(body.refresh_token, expected_user_id=expected_user_id)
    except AuthServiceError as exc:
        raise refresh_error(exc) from exc
    return _token_response(tokens)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    body: RefreshTokenRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Revoke the given refresh token. Unknown tokens still return 200."""
    sessions.logout(body.refresh_token)
    return _message(200, "Logged out successfully.")


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the account behind the bearer access token."""
    payload = MeResponse(user=UserResponse.from_user(current_user))
    return JSONResponse(content=payload.model_dump(mode="json", by_alias=True))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(_settings.otp_rate_limit)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Email a reset OTP if the account exists. Same answer either way."""
    sessions.forgot_password(body.email)
    return _message(200, FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(_settings.otp_rate_limit)  # OTP guessing
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """Consume the reset OTP and store the new password."""
    sessions.reset_password(body.email, body.otp, body.new_password)
    return _message(200, "Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def refresh_error(exc: AuthServiceError) -> HTTPException:
    """Map a refresh failure to its HTTP status and client-facing code.

    401 REFRESH_TOKEN_EXPIRED tells the client to send the user back to login;
    every other refresh failure is a 403.
    """
    if isinstance(exc, RefreshTokenExpired):
        status, code, message = 401, exc.code, exc.message
    elif isinstance(exc, WrongAudience):
        status, code, message = 403, exc.code, exc.message
    elif isinstance(exc, UserNotFound):
        status, code, message = 403, exc.code, exc.message
    elif isinstance(exc, (InvalidToken, RefreshTokenNotFound)):
        status, code, message = 403, "INVALID_REFRESH_TOKEN", "Invalid refresh token."
    else:
        return error_exception(exc)
    return HTTPException(status_code=status, detail={"message": message, "code": code})


def error_status(exc: AuthServiceError) -> int:
    """Default HTTP status for a session manager failure."""
    return 500 if isinstance(exc, InfrastructureError) else 400


def error_exception(exc: AuthServiceError) -> HTTPException:
    return HTTPException(status_code=error_status(exc), detail={"message": exc.message, "code": exc.code})


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=MessageResponse(message=message).model_dump())


def _token_response(tokens: SessionTokens) -> JSONResponse:
    payload = TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        refresh_token_expiry=tokens.refresh_token_expiry,
    )
    resp = JSONResponse(status_code=200, content=payload.model_dump(mode="json", by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp
