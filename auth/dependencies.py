"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Access tokens travel in the `Authorization: Bearer <token>` header and must
carry audience "access". Every failure becomes an HTTP 401 with a flat
{message, code} body so clients can branch on the code:

  ACCESS_TOKEN_REQUIRED -- no bearer header
  TOKEN_EXPIRED         -- signature fine, exp passed (client should refresh)
  INVALID_TOKEN_TYPE    -- a refresh token was sent where an access token belongs
  INVALID_TOKEN         -- bad signature or malformed token
  USER_NOT_FOUND        -- token is valid but its user no longer exists

get_access_claims() is the stateless check (signature + expiry + audience).
get_current_user() wraps it and loads the User from the store.

Layer rule: no imports from api/ or client/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.errors import AuthServiceError, UserNotFound
from auth.models import ACCESS_AUDIENCE, TokenClaims, User
from auth.sessions import SessionManager


def get_session_manager(request: Request) -> SessionManager:
    """Return the SessionManager wired into app.state by the lifespan."""
    return request.app.state.sessions


def bearer_token(request: Request) -> str | None:
    """Return the token from an `Authorization: Bearer` header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"message": message, "code": code})


def get_access_claims(request: Request, sessions: SessionManager = Depends(get_session_manager)) -> TokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: TokenClaims = Depends(get_access_claims)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise _unauthorized("ACCESS_TOKEN_REQUIRED", "Access token required.")
    try:
        return sessions.issuer.verify(token, ACCESS_AUDIENCE)
    except AuthServiceError as exc:
        raise _unauthorized(exc.code, exc.message) from exc


def get_current_user(
    claims: TokenClaims = Depends(get_access_claims),
    sessions: SessionManager = Depends(get_session_manager),
) -> User:
    """Require a valid access token whose user still exists."""
    try:
        return sessions.current_user(claims)
    except UserNotFound as exc:
        raise _unauthorized(exc.code, exc.message) from exc
