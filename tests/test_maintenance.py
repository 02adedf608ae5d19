"""
tests/test_maintenance.py -- Background purge loop and the maintenance CLI.

Covers:
  - _purge_loop keeps running after a failed purge and logs it
  - main.py purge / revoke-sessions against a real store
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import main as cli
from api.main import _purge_loop
from auth.models import PendingRegistration, RefreshTokenRecord


class FlakyStore:
    """purge_expired() fails once with a non-database error, then succeeds."""

    def __init__(self) -> None:
        self.calls = 0

    def purge_expired(self):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("disk went away")
        return {"pending_registrations": 0, "password_resets": 0, "refresh_tokens": 0}


def test_purge_loop_survives_unexpected_error(caplog):
    store = FlakyStore()
    app = SimpleNamespace(state=SimpleNamespace(store=store))

    async def run() -> bool:
        task = asyncio.create_task(_purge_loop(app, 0))
        for _ in range(200):
            if store.calls >= 3:
                break
            await asyncio.sleep(0.01)
        alive = not task.done()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return alive

    with caplog.at_level("ERROR", logger="authservice.api"):
        alive = asyncio.run(run())

    assert alive
    assert store.calls >= 3
    assert "Expired record purge failed" in caplog.text


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _use_store(monkeypatch, store) -> None:
    db_url = str(store.engine.url)
    monkeypatch.setattr(cli, "get_settings", lambda: SimpleNamespace(database_url=db_url))


def test_cli_purge(store, monkeypatch, capsys):
    store.upsert_pending_registration(
        PendingRegistration(
            email="old@x.com",
            display_name="Old",
            password_hash="$2b$04$hash",
            otp_code="123456",
            otp_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
    )
    _use_store(monkeypatch, store)

    assert cli.main(["purge"]) == 0
    assert "pending_registrations" in capsys.readouterr().out
    assert store.get_pending_registration("old@x.com") is None


def test_cli_revoke_sessions(store, monkeypatch, capsys):
    pending = PendingRegistration(
        email="ann@x.com",
        display_name="Ann",
        password_hash="$2b$04$hash",
        otp_code="123456",
        otp_expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )
    store.upsert_pending_registration(pending)
    user_id = store.promote_pending_registration(pending)
    for value in ("tok-a", "tok-b"):
        store.create_refresh_token(
            RefreshTokenRecord(user_id=user_id, token_value=value, expires_at=datetime.now(timezone.utc) + timedelta(days=1))
        )
    _use_store(monkeypatch, store)

    assert cli.main(["revoke-sessions", "ann@x.com"]) == 0
    assert "Revoked 2 session(s)" in capsys.readouterr().out
    assert store.count_refresh_tokens(user_id) == 0


def test_cli_revoke_sessions_unknown_email(store, monkeypatch):
    _use_store(monkeypatch, store)
    assert cli.main(["revoke-sessions", "ghost@x.com"]) == 1
