"""
client/session.py -- requests-based API client with single-flight token refresh.

AuthClient keeps the current access/refresh pair in memory and attaches the
access token to every call. When a call comes back 401 TOKEN_EXPIRED it
refreshes once and retries the call once.

Single-flight refresh:
  Refresh tokens are single-use on the server. If two threads both noticed
  the expired access token and both sent the same refresh token, the second
  request would be rejected (and, with reuse revocation enabled on the
  server, would log the user out everywhere). So refresh() runs under a lock
  and every pair carries a generation number. A caller that waited on the
  lock while another thread refreshed sees the generation moved on and
  reuses the new access token instead of spending the old refresh token.

Usage:
    client = AuthClient("http://localhost:8000/api/v1")
    client.login("ann@x.com", "secret1")
    me = client.request("GET", "/auth/me").json()
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import requests

logger = logging.getLogger("authservice.client")

REFRESH_PATH = "/auth/refresh-token"

# Refresh failures after which the refresh token can never work again.
SESSION_ENDED_CODES = frozenset(
    {"REFRESH_TOKEN_EXPIRED", "INVALID_REFRESH_TOKEN", "INVALID_TOKEN_TYPE", "USER_NOT_FOUND"}
)


class AuthClientError(Exception):
    """The service answered with an error envelope."""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None) -> None:
        super().__init__(f"{status_code} {code or ''} {message}".strip())
        self.status_code = status_code
        self.message = message
        self.code = code


class SessionExpiredError(AuthClientError):
    """The session cannot be refreshed any more; the user must log in again."""


def _error_from(resp: requests.Response) -> AuthClientError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    return AuthClientError(resp.status_code, body.get("message", resp.reason or ""), body.get("code"))


class AuthClient:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._generation = 0

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    @property
    def is_authenticated(self) -> bool:
        return self._refresh_token is not None

    # ------------------------------------------------------------------
    # Account endpoints (no token needed)
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str) -> str:
        return self._post_message("/auth/register", {"name": name, "email": email, "password": password})

    def verify_otp(self, email: str, otp: str) -> str:
        return self._post_message("/auth/verify-otp", {"email": email, "otp": otp})

    def forgot_password(self, email: str) -> str:
        return self._post_message("/auth/forgot-password", {"email": email})

    def reset_password(self, email: str, otp: str, new_password: str) -> str:
        return self._post_message("/auth/reset-password", {"email": email, "otp": otp, "newPassword": new_password})

    # ------------------------------------------------------------------
    # Session endpoints
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> dict[str, Any]:
        resp = self._session.post(
            self._url("/auth/login"), json={"email": email, "password": password}, timeout=self.timeout
        )
        if resp.status_code != 200:
            raise _error_from(resp)
        data = resp.json()
        with self._lock:
            self._store_pair(data)
        return data

    def logout(self) -> None:
        """Revoke the refresh token on the server and forget the local pair."""
        with self._lock:
            refresh_token = self._refresh_token
            self._clear()
        if refresh_token is None:
            return
        resp = self._session.post(self._url("/auth/logout"), json={"refreshToken": refresh_token}, timeout=self.timeout)
        if resp.status_code != 200:
            raise _error_from(resp)

    def refresh(self, seen_generation: Optional[int] = None) -> str:
        """Rotate the refresh token and return the new access token.

        seen_generation is the generation the caller's failed request used.
        If the pair has moved on since then, another caller already
        refreshed and its access token is returned without a request.

        Raises SessionExpiredError (and forgets the pair) when the server
        says the refresh token is dead. Any other failure, such as a 500 or a
        429, raises AuthClientError and keeps the pair for a later retry.
        """
        with self._lock:
            if seen_generation is not None and seen_generation != self._generation:
                if self._access_token is None:
                    raise SessionExpiredError(401, "Session ended while waiting for refresh.", "REFRESH_TOKEN_EXPIRED")
                return self._access_token
            if self._refresh_token is None:
                raise SessionExpiredError(401, "Not logged in.", "REFRESH_TOKEN_EXPIRED")

            headers = {"Authorization": f"Bearer {self._access_token}"} if self._access_token else {}
            resp = self._session.post(
                self._url(REFRESH_PATH),
                json={"refreshToken": self._refresh_token},
                headers=headers,
                timeout=self.timeout,
            )
            if resp.status_code != 200:
                error = _error_from(resp)
                logger.warning("Token refresh failed: %s", error)
                if resp.status_code in (401, 403) and error.code in SESSION_ENDED_CODES:
                    self._clear()
                    raise SessionExpiredError(error.status_code, error.message, error.code)
                # Server-side failures roll the rotation back; the old pair still works.
                raise error
            self._store_pair(resp.json())
            return self._access_token

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send an authenticated request, refreshing once on TOKEN_EXPIRED."""
        with self._lock:
            token, generation = self._access_token, self._generation
        resp = self._send(method, path, token, **kwargs)
        if resp.status_code == 401 and _error_code(resp) == "TOKEN_EXPIRED":
            token = self.refresh(seen_generation=generation)
            resp = self._send(method, path, token, **kwargs)
        return resp

    def me(self) -> dict[str, Any]:
        resp = self.request("GET", "/auth/me")
        if resp.status_code != 200:
            raise _error_from(resp)
        return resp.json()["user"]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _send(self, method: str, path: str, token: Optional[str], **kwargs) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        kwargs.setdefault("timeout", self.timeout)
        return self._session.request(method, self._url(path), headers=headers, **kwargs)

    def _post_message(self, path: str, payload: dict) -> str:
        resp = self._session.post(self._url(path), json=payload, timeout=self.timeout)
        if resp.status_code not in (200, 201):
            raise _error_from(resp)
        return resp.json()["message"]

    def _store_pair(self, data: dict) -> None:
        # Caller holds self._lock.
        self._access_token = data["accessToken"]
        self._refresh_token = data["refreshToken"]
        self._generation += 1

    def _clear(self) -> None:
        # Caller holds self._lock.
        self._access_token = None
        self._refresh_token = None
        self._generation += 1


def _error_code(resp: requests.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("code") if isinstance(body, dict) else None
