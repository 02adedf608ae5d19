"""
tests/test_client.py -- Unit tests for client.session.AuthClient.

The requests.Session is replaced with a MagicMock so no server is needed.
Focus: single-flight refresh (concurrent callers spend the refresh token
once), retry-once on TOKEN_EXPIRED, and error envelopes.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from client.session import AuthClient, AuthClientError, SessionExpiredError

BASE = "http://auth.test/api/v1"


def _response(status_code: int, body: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.reason = "reason"
    resp.json.return_value = body or {}
    return resp


def _pair(n: int) -> dict:
    return {
        "accessToken": f"access-{n}",
        "refreshToken": f"refresh-{n}",
        "expiresIn": 900,
        "refreshTokenExpiry": "2030-01-01T00:00:00Z",
    }


def _logged_in_client(session: MagicMock) -> AuthClient:
    session.post.return_value = _response(200, _pair(1))
    client = AuthClient(BASE, session=session)
    client.login("ann@x.com", "secret1")
    return client


class TestLogin:
    def test_login_stores_pair(self):
        session = MagicMock()
        client = _logged_in_client(session)
        assert client.access_token == "access-1"
        assert client.refresh_token == "refresh-1"
        assert client.is_authenticated
        session.post.assert_called_once_with(
            f"{BASE}/auth/login", json={"email": "ann@x.com", "password": "secret1"}, timeout=10
        )

    def test_login_failure_raises_with_code(self):
        session = MagicMock()
        session.post.return_value = _response(400, {"message": "Invalid credentials.", "code": "INVALID_CREDENTIALS"})
        client = AuthClient(BASE, session=session)
        with pytest.raises(AuthClientError) as exc_info:
            client.login("ann@x.com", "wrong")
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "INVALID_CREDENTIALS"
        assert not client.is_authenticated


class TestRequest:
    def test_attaches_bearer(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.request.return_value = _response(200, {"user": {"id": 1}})

        assert client.me() == {"id": 1}
        _, kwargs = session.request.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer access-1"

    def test_refreshes_once_on_token_expired(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.request.side_effect = [
            _response(401, {"message": "Token expired.", "code": "TOKEN_EXPIRED"}),
            _response(200, {"user": {"id": 1}}),
        ]
        session.post.return_value = _response(200, _pair(2))

        resp = client.request("GET", "/auth/me")

        assert resp.status_code == 200
        assert client.access_token == "access-2"
        refresh_call = session.post.call_args
        assert refresh_call.args[0] == f"{BASE}/auth/refresh-token"
        assert refresh_call.kwargs["json"] == {"refreshToken": "refresh-1"}
        assert refresh_call.kwargs["headers"] == {"Authorization": "Bearer access-1"}
        assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer access-2"

    def test_other_401_is_not_retried(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.request.return_value = _response(401, {"message": "Invalid token.", "code": "INVALID_TOKEN"})
        resp = client.request("GET", "/auth/me")
        assert resp.status_code == 401
        assert session.request.call_count == 1
        assert session.post.call_count == 1  # login only

    def test_failed_refresh_clears_session(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.request.return_value = _response(401, {"message": "Token expired.", "code": "TOKEN_EXPIRED"})
        session.post.return_value = _response(
            401, {"message": "Refresh token expired. Please log in again.", "code": "REFRESH_TOKEN_EXPIRED"}
        )
        with pytest.raises(SessionExpiredError) as exc_info:
            client.request("GET", "/auth/me")
        assert exc_info.value.code == "REFRESH_TOKEN_EXPIRED"
        assert not client.is_authenticated

    def test_server_error_during_refresh_keeps_session(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.post.return_value = _response(500, {"message": "An unexpected error occurred.", "code": "INTERNAL_ERROR"})

        with pytest.raises(AuthClientError) as exc_info:
            client.refresh()
        assert not isinstance(exc_info.value, SessionExpiredError)
        assert exc_info.value.status_code == 500
        assert client.is_authenticated
        assert client.refresh_token == "refresh-1"

        # The same refresh token is spent on the retry.
        session.post.return_value = _response(200, _pair(2))
        assert client.refresh() == "access-2"
        assert session.post.call_args.kwargs["json"] == {"refreshToken": "refresh-1"}

    def test_rate_limited_refresh_keeps_session(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.post.return_value = _response(429, {"message": "Too many requests.", "code": "RATE_LIMITED"})
        with pytest.raises(AuthClientError):
            client.refresh()
        assert client.refresh_token == "refresh-1"

    def test_revoked_refresh_token_clears_session(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.post.return_value = _response(403, {"message": "Invalid refresh token.", "code": "INVALID_REFRESH_TOKEN"})
        with pytest.raises(SessionExpiredError):
            client.refresh()
        assert not client.is_authenticated


class TestSingleFlightRefresh:
    def test_concurrent_expiry_refreshes_once(self):
        session = MagicMock()
        client = _logged_in_client(session)
        refresh_calls = []

        def fake_request(method, url, headers=None, **kwargs):
            if headers.get("Authorization") == "Bearer access-1":
                return _response(401, {"message": "Token expired.", "code": "TOKEN_EXPIRED"})
            return _response(200, {"user": {"id": 1}})

        def fake_post(url, json=None, headers=None, timeout=None):
            refresh_calls.append(json["refreshToken"])
            time.sleep(0.05)
            return _response(200, _pair(2))

        session.request.side_effect = fake_request
        session.post.side_effect = fake_post

        statuses: list[int] = []
        lock = threading.Lock()

        def worker():
            resp = client.request("GET", "/auth/me")
            with lock:
                statuses.append(resp.status_code)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert statuses == [200] * 8
        assert refresh_calls == ["refresh-1"]
        assert client.refresh_token == "refresh-2"

    def test_stale_generation_reuses_new_token(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.post.return_value = _response(200, _pair(2))
        client.refresh()
        session.post.reset_mock()

        # A caller that saw the first pair must not spend refresh-2.
        assert client.refresh(seen_generation=1) == "access-2"
        session.post.assert_not_called()


class TestLogout:
    def test_logout_sends_refresh_token_and_clears(self):
        session = MagicMock()
        client = _logged_in_client(session)
        session.post.return_value = _response(200, {"message": "Logged out successfully."})
        client.logout()
        assert not client.is_authenticated
        assert session.post.call_args.kwargs["json"] == {"refreshToken": "refresh-1"}

    def test_logout_when_logged_out_is_noop(self):
        session = MagicMock()
        client = AuthClient(BASE, session=session)
        client.logout()
        session.post.assert_not_called()


def test_account_endpoints_return_message():
    session = MagicMock()
    session.post.return_value = _response(201, {"message": "Registration initiated. OTP sent to your email."})
    client = AuthClient(BASE, session=session)
    assert client.register("Ann", "ann@x.com", "secret1").startswith("Registration initiated")
    session.post.return_value = _response(200, {"message": "Password has been reset successfully."})
    client.reset_password("ann@x.com", "123456", "brand-new1")
    assert session.post.call_args.kwargs["json"] == {
        "email": "ann@x.com",
        "otp": "123456",
        "newPassword": "brand-new1",
    }
