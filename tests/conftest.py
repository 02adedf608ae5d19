"""
tests/conftest.py -- Shared test fixtures for the auth service.

This module provides:
  - RecordingNotifier: captures OTPs instead of emailing them
  - FakeClock: injectable clock so OTP / refresh-record expiry is testable
  - store / sessions: unit-level fixtures on a fresh SQLite file per test
  - api_client: TestClient with a patched lifespan for integration tests

Design: file-backed SQLite in pytest's tmp dir (not :memory:). TestClient
runs sync route handlers in a thread pool and the concurrency tests open
several connections at once; a plain :memory: DB is per-connection and
would present a blank schema to every other thread.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY and hashing stays fast.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import so get_settings() sees it.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.notifier import NotificationError
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import TokenIssuer

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"


class RecordingNotifier:
    """Notifier that remembers every OTP it was asked to deliver."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, int]] = []
        self.fail = False

    def send_registration_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        self._record("registration", email, otp, expiry_minutes)

    def send_password_reset_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        self._record("password-reset", email, otp, expiry_minutes)

    def _record(self, kind: str, email: str, otp: str, expiry_minutes: int) -> None:
        self.sent.append((kind, email, otp, expiry_minutes))
        if self.fail:
            raise NotificationError("SMTP down")

    def last_otp(self, email: str, kind: str = "registration") -> str:
        for sent_kind, sent_email, otp, _ in reversed(self.sent):
            if sent_kind == kind and sent_email == email:
                return otp
        raise AssertionError(f"No {kind} OTP sent to {email}")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=7))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions(store, issuer, notifier, clock) -> SessionManager:
    return SessionManager(store, issuer, notifier, otp_ttl=timedelta(minutes=5), clock=clock)


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, sessions: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and session manager into app.state. The purge_task
    is a long-sleeping coroutine (a real asyncio.Task is required; the
    shutdown path calls .cancel() on it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.sessions = sessions
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers against an isolated database. Rate limiting is
    switched off so a module's worth of logins does not trip it.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    store = CredentialStore(db_url=f"sqlite:///{db_path}")
    notifier = RecordingNotifier()
    issuer = TokenIssuer(TEST_SECRET, access_ttl=timedelta(minutes=15), refresh_ttl=timedelta(days=7))
    sessions = SessionManager(store, issuer, notifier, otp_ttl=timedelta(minutes=5))

    app.router.lifespan_context = _patch_lifespan(store, sessions)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, notifier

    limiter.enabled = True
    store.close()
