"""
tests/test_config.py -- Settings validation rules.

Settings is instantiated directly with _env_file=None so a developer's .env
cannot leak into these tests.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_debug_generates_secret_key():
    settings = Settings(_env_file=None, debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(_env_file=None, debug=False, secret_key="")


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(_env_file=None, debug=False, secret_key="short")


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, debug=True, bcrypt_rounds=rounds)


def test_defaults():
    settings = Settings(_env_file=None, debug=True, secret_key="k" * 32)
    assert settings.access_token_expire_minutes == 15
    assert settings.refresh_token_expire_days == 7
    assert settings.otp_expiration_minutes == 5
    assert settings.revoke_sessions_on_refresh_reuse is False
