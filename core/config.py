"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Both token audiences
  are signed with it, so a short key weakens access and refresh tokens alike.

  BCRYPT_ROUNDS below 4 or above 31 is rejected -- bcrypt itself refuses those
  values, and failing at startup beats failing on the first registration.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authservice.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authservice.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens and OTPs
    # ------------------------------------------------------------------

    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    otp_expiration_minutes: int = 5
    bcrypt_rounds: int = 10
    # Reuse of an already-rotated refresh token is always logged. When this is
    # set, every refresh token of the affected user is revoked as well.
    revoke_sessions_on_refresh_reuse: bool = False

    # ------------------------------------------------------------------
    # Outbound email (empty smtp_host means dev mode: log instead of send)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = ""
    email_from_name: str = "Virtual Vanguards"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost:3000"]
    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"
    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing. A random key in production would silently
            invalidate every refresh token on each restart.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Tokens will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
