"""
auth/hashing.py -- Password hashing and OTP generation.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds so operators can raise it as hardware gets
       faster; tests drop it to the bcrypt minimum of 4. The _DUMMY_HASH
       constant enables timing equalization in the login path so response
       time does not reveal whether an email is registered.

  Failures: a stored hash that bcrypt cannot parse is a data-integrity
       problem, not a wrong password. verify_password() raises
       InfrastructureError for it instead of quietly returning False.

  OTPs: six digits from the `secrets` CSPRNG. An OTP only needs to stay
       unguessable for its few-minute lifetime, but the CSPRNG costs nothing
       extra over `random`.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import secrets

import bcrypt

from auth.errors import InfrastructureError
from core.config import get_settings

logger = logging.getLogger("authservice.hashing")

_settings = get_settings()

OTP_LENGTH = 6


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    input at 255 characters and bcrypt 4.x raises on oversized input, so the
    encoded value is trimmed to 72 bytes here before hashing.
    """
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    try:
        return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")
    except ValueError as exc:
        logger.error("bcrypt hashing failed: %s", exc)
        raise InfrastructureError() from exc


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    The comparison runs inside bcrypt.checkpw, which does the constant-time
    comparison for us.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError as exc:
        logger.error("bcrypt verification failed on a stored hash: %s", exc)
        raise InfrastructureError() from exc


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Verify against it whenever the email is unknown.
_DUMMY_HASH: str = hash_password("authservice_timing_dummy")


def burn_verify(plain: str) -> None:
    """Run a full bcrypt verification whose result is discarded."""
    verify_password(plain, _DUMMY_HASH)


def generate_otp() -> str:
    """Return a 6-digit numeric one-time passcode, zero-padded."""
    return f"{secrets.randbelow(10**OTP_LENGTH):0{OTP_LENGTH}d}"
