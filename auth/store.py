"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.
The session manager and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every operation that consumes something single-use (an OTP, a refresh
  token) is a conditional DELETE followed by the dependent write, inside one
  transaction (engine.begin()). The DELETE's rowcount decides the outcome:
  of two concurrent requests presenting the same OTP or the same refresh
  token, exactly one deletes the row and goes on to write; the other sees
  rowcount 0 and gets nothing. No cross-key transaction is ever needed
  because each operation touches a single email or a single token value.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so lexical comparison in SQL matches chronological order.

Layer rule: no imports from api/, client/, or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine

from auth.models import PasswordResetRequest, PendingRegistration, RefreshTokenRecord, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authservice.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("display_name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_pending_registrations = Table(
    "pending_registrations",
    _metadata,
    Column("email", String(255), primary_key=True),
    Column("display_name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("otp_code", String(6), nullable=False),
    Column("otp_expires_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("email", String(255), primary_key=True),
    Column("otp_code", String(6), nullable=False),
    Column("otp_expires_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_value", Text, nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, pending registrations, reset requests and refresh tokens.

    Usage:
        store = CredentialStore("sqlite:///authservice.db")
        user = store.get_user_by_email("ann@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Pending registrations
    # ------------------------------------------------------------------

    def upsert_pending_registration(self, pending: PendingRegistration) -> None:
        """Create or replace the pending registration for pending.email.

        Replacing supersedes any earlier OTP for that email.
        """
        with self.engine.begin() as conn:
            conn.execute(_pending_registrations.delete().where(_pending_registrations.c.email == pending.email))
            conn.execute(
                _pending_registrations.insert().values(
                    email=pending.email,
                    display_name=pending.display_name,
                    password_hash=pending.password_hash,
                    otp_code=pending.otp_code,
                    otp_expires_at=_to_iso(pending.otp_expires_at),
                )
            )

    def get_pending_registration(self, email: str) -> PendingRegistration | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _pending_registrations.select().where(_pending_registrations.c.email == email)
            ).fetchone()
        return _row_to_pending(row) if row is not None else None

    def delete_pending_registration(self, email: str, otp_code: str | None = None) -> bool:
        """Delete the pending registration for email.

        When otp_code is given the delete only matches that exact code, so a
        stale-record cleanup cannot remove a record a concurrent register()
        has just replaced. Returns True if a row was deleted.
        """
        condition = _pending_registrations.c.email == email
        if otp_code is not None:
            condition = condition & (_pending_registrations.c.otp_code == otp_code)
        with self.engine.begin() as conn:
            result = conn.execute(_pending_registrations.delete().where(condition))
        return result.rowcount > 0

    def promote_pending_registration(self, pending: PendingRegistration) -> int | None:
        """Consume a pending registration and create the permanent user from it.

        The pending row is deleted only if it still carries pending.otp_code;
        the user is inserted only if that delete removed a row. Both happen in
        one transaction. Returns the new user id, or None if the OTP was
        already consumed (or superseded) by a concurrent request.

        Raises sqlalchemy.exc.IntegrityError if a user with that email already
        exists; the transaction is rolled back and the pending row survives.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _pending_registrations.delete().where(
                    (_pending_registrations.c.email == pending.email)
                    & (_pending_registrations.c.otp_code == pending.otp_code)
                )
            )
            if consumed.rowcount != 1:
                return None
            result = conn.execute(
                _users.insert().values(
                    display_name=pending.display_name,
                    email=pending.email,
                    password_hash=pending.password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Password reset requests
    # ------------------------------------------------------------------

    def upsert_password_reset(self, reset: PasswordResetRequest) -> None:
        """Create or replace the reset request for reset.email."""
        with self.engine.begin() as conn:
            conn.execute(_password_resets.delete().where(_password_resets.c.email == reset.email))
            conn.execute(
                _password_resets.insert().values(
                    email=reset.email,
                    otp_code=reset.otp_code,
                    otp_expires_at=_to_iso(reset.otp_expires_at),
                )
            )

    def get_password_reset(self, email: str) -> PasswordResetRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(_password_resets.select().where(_password_resets.c.email == email)).fetchone()
        return _row_to_reset(row) if row is not None else None

    def delete_password_reset(self, email: str, otp_code: str | None = None) -> bool:
        """Delete the reset request for email (optionally only if it has otp_code)."""
        condition = _password_resets.c.email == email
        if otp_code is not None:
            condition = condition & (_password_resets.c.otp_code == otp_code)
        with self.engine.begin() as conn:
            result = conn.execute(_password_resets.delete().where(condition))
        return result.rowcount > 0

    def complete_password_reset(self, email: str, otp_code: str, password_hash: str) -> bool:
        """Consume the reset OTP and store the new password hash atomically.

        Returns False if the reset request was already consumed or replaced,
        in which case nothing is written.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _password_resets.delete().where(
                    (_password_resets.c.email == email) & (_password_resets.c.otp_code == otp_code)
                )
            )
            if consumed.rowcount != 1:
                return False
            conn.execute(
                _users.update()
                .where(_users.c.email == email)
                .values(password_hash=password_hash, updated_at=_now_iso())
            )
        return True

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> int:
        """Insert a refresh token record and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=record.user_id,
                    token_value=record.token_value,
                    expires_at=_to_iso(record.expires_at),
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_value: str) -> RefreshTokenRecord | None:
        """Look up a refresh token record by its value. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_value == token_value)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, token_value: str) -> bool:
        """Delete a refresh token record. Returns True if a row was deleted."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_value == token_value))
        return result.rowcount > 0

    def rotate_refresh_token(self, old_value: str, new_record: RefreshTokenRecord) -> bool:
        """Replace old_value with new_record in one transaction.

        The new record is inserted only if this call deleted the old one.
        Returns False (and writes nothing) when another request already
        rotated or revoked old_value.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_value == old_value))
            if consumed.rowcount != 1:
                return False
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=new_record.user_id,
                    token_value=new_record.token_value,
                    expires_at=_to_iso(new_record.expires_at),
                    created_at=_now_iso(),
                )
            )
        return True

    def delete_user_refresh_tokens(self, user_id: int) -> int:
        """Revoke every refresh token a user holds. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def count_refresh_tokens(self, user_id: int) -> int:
        """Return the number of live refresh token records for a user."""
        with self.engine.connect() as conn:
            stmt = select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id)
            return conn.execute(stmt).scalar() or 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Delete every expired pending registration, reset request and refresh token.

        Expired records are also removed lazily when a request trips over
        them; this sweep catches the ones nobody asks about again.
        Returns the number of rows removed per table.
        """
        cutoff = _to_iso(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            pending = conn.execute(
                _pending_registrations.delete().where(_pending_registrations.c.otp_expires_at < cutoff)
            ).rowcount
            resets = conn.execute(_password_resets.delete().where(_password_resets.c.otp_expires_at < cutoff)).rowcount
            tokens = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < cutoff)).rowcount
        return {"pending_registrations": pending, "password_resets": resets, "refresh_tokens": tokens}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        display_name=row.display_name,
        email=row.email,
        password_hash=row.password_hash,
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_pending(row) -> PendingRegistration:
    return PendingRegistration(
        email=row.email,
        display_name=row.display_name,
        password_hash=row.password_hash,
        otp_code=row.otp_code,
        otp_expires_at=_from_iso(row.otp_expires_at),
    )


def _row_to_reset(row) -> PasswordResetRequest:
    return PasswordResetRequest(
        email=row.email,
        otp_code=row.otp_code,
        otp_expires_at=_from_iso(row.otp_expires_at),
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_value=row.token_value,
        expires_at=_from_iso(row.expires_at),
        created_at=_from_iso(row.created_at),
    )
