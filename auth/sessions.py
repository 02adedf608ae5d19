"""
auth/sessions.py -- Registration, login, refresh rotation, logout and password reset.

SessionManager is the only writer of pending registrations, reset requests
and refresh token records. Each public method is one request-scoped unit of
work: it reads the store, decides, and writes through one of the store's
atomic conditional-delete primitives. Nothing is cached in the instance
between calls, so one manager can serve every request thread.

Registration state per email:

    Unregistered --register()--> PendingOTP --verify_otp()--> Verified(User)
                                     |  ^
                                     |  +-- register() again: new OTP supersedes the old one
                                     +----- OTP expiry found by verify_otp(): back to Unregistered

Failure reporting: every failure is an AuthServiceError subclass from
auth/errors.py. Store failures are re-raised as InfrastructureError.

Anti-enumeration: login() raises the same InvalidCredentials for an unknown
email and for a wrong password, and runs bcrypt in both cases so timing does
not tell them apart. forgot_password() returns normally whether or not the
email belongs to an account.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import functools
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    EmailAlreadyVerified,
    InfrastructureError,
    InvalidCredentials,
    NoPendingRegistration,
    NoResetRequest,
    OTPExpired,
    OTPMismatch,
    RefreshTokenExpired,
    RefreshTokenNotFound,
    SamePassword,
    TokenExpired,
    UserNotFound,
)
from auth.hashing import burn_verify, generate_otp, hash_password, verify_password
from auth.models import (
    REFRESH_AUDIENCE,
    PasswordResetRequest,
    PendingRegistration,
    RefreshTokenRecord,
    TokenClaims,
    User,
)
from auth.notifier import NotificationError, Notifier, redact_email
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import Settings

logger = logging.getLogger("authservice.sessions")


@dataclass(frozen=True)
class SessionTokens:
    """A freshly issued access/refresh pair."""

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    refresh_token_expiry: datetime


def _store_guard(method):
    """Re-raise database failures from a SessionManager method as InfrastructureError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Credential store failure in %s", method.__name__)
            raise InfrastructureError() from exc

    return wrapper


def _codes_match(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class SessionManager:
    """Orchestrates the credential store, token issuer and notifier.

    clock is injectable so OTP and refresh-record expiry can be tested without
    sleeping; it must return timezone-aware UTC datetimes.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        notifier: Notifier,
        *,
        otp_ttl: timedelta = timedelta(minutes=5),
        revoke_sessions_on_reuse: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.notifier = notifier
        self.otp_ttl = otp_ttl
        self.revoke_sessions_on_reuse = revoke_sessions_on_reuse
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, store: CredentialStore, notifier: Notifier, settings: Settings) -> SessionManager:
        return cls(
            store,
            TokenIssuer.from_settings(settings),
            notifier,
            otp_ttl=timedelta(minutes=settings.otp_expiration_minutes),
            revoke_sessions_on_reuse=settings.revoke_sessions_on_refresh_reuse,
        )

    def _now(self) -> datetime:
        return self._clock()

    @property
    def otp_ttl_minutes(self) -> int:
        return max(1, int(self.otp_ttl.total_seconds() // 60))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @_store_guard
    def register(self, display_name: str, email: str, password: str) -> None:
        """Start a registration: store a pending record and send its OTP.

        Raises EmailAlreadyVerified if a user with this email exists. A
        repeat call before verification replaces the pending record, so only
        the newest OTP is accepted.
        """
        if self.store.get_user_by_email(email) is not None:
            raise EmailAlreadyVerified()

        otp = generate_otp()
        self.store.upsert_pending_registration(
            PendingRegistration(
                email=email,
                display_name=display_name,
                password_hash=hash_password(password),
                otp_code=otp,
                otp_expires_at=self._now() + self.otp_ttl,
            )
        )
        logger.info("Registration pending for %s", redact_email(email))
        self._notify(self.notifier.send_registration_otp, email, otp)

    @_store_guard
    def verify_otp(self, email: str, otp: str) -> User:
        """Consume the registration OTP and create the permanent user.

        Raises NoPendingRegistration, OTPExpired (after deleting the stale
        record) or OTPMismatch. The code is compared exactly, without trimming.
        """
        pending = self.store.get_pending_registration(email)
        if pending is None:
            raise NoPendingRegistration()
        if self._now() > pending.otp_expires_at:
            self.store.delete_pending_registration(email, otp_code=pending.otp_code)
            raise OTPExpired("OTP expired. Please register again.")
        if not _codes_match(otp, pending.otp_code):
            raise OTPMismatch()

        try:
            user_id = self.store.promote_pending_registration(pending)
        except IntegrityError as exc:
            raise EmailAlreadyVerified() from exc
        if user_id is None:
            # A concurrent verify (or a re-register) got to the record first.
            raise NoPendingRegistration()

        logger.info("Registration verified for %s (user_id=%s)", redact_email(email), user_id)
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise InfrastructureError("User not found after write.")
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_store_guard
    def login(self, email: str, password: str) -> SessionTokens:
        """Check credentials and open a new session.

        Any number of sessions per user may be open at once.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            burn_verify(password)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()

        tokens = self._issue_pair(user)
        self.store.create_refresh_token(
            RefreshTokenRecord(
                user_id=user.id,
                token_value=tokens.refresh_token,
                expires_at=tokens.refresh_token_expiry,
            )
        )
        logger.info("Login succeeded for user_id=%s", user.id)
        return tokens

    @_store_guard
    def refresh(self, refresh_token: str, expected_user_id: int | None = None) -> SessionTokens:
        """Exchange a refresh token for a new pair; the old token stops working.

        expected_user_id, when given, must own the token (the HTTP layer passes
        the user of the bearer access token sent alongside it).

        Raises:
            InvalidToken / WrongAudience: not a validly signed refresh token.
            RefreshTokenExpired: expired by signature or by the stored record
                (the stale record is deleted).
            RefreshTokenNotFound: no live record -- already rotated, logged
                out, or lost a rotation race to a concurrent request.
        """
        try:
            claims = self.issuer.verify(refresh_token, REFRESH_AUDIENCE)
        except TokenExpired as exc:
            self.store.delete_refresh_token(refresh_token)
            raise RefreshTokenExpired() from exc

        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            self._on_refresh_reuse(claims)
            raise RefreshTokenNotFound()
        if self._now() > record.expires_at:
            self.store.delete_refresh_token(refresh_token)
            raise RefreshTokenExpired()
        if record.user_id != claims.user_id or expected_user_id not in (None, record.user_id):
            raise RefreshTokenNotFound()

        user = self.store.get_user_by_id(record.user_id)
        if user is None:
            self.store.delete_refresh_token(refresh_token)
            raise UserNotFound()

        tokens = self._issue_pair(user)
        rotated = self.store.rotate_refresh_token(
            refresh_token,
            RefreshTokenRecord(
                user_id=user.id,
                token_value=tokens.refresh_token,
                expires_at=tokens.refresh_token_expiry,
            ),
        )
        if not rotated:
            logger.info("Refresh token rotation race lost for user_id=%s", user.id)
            raise RefreshTokenNotFound()
        logger.info("Refresh token rotated for user_id=%s", user.id)
        return tokens

    @_store_guard
    def logout(self, refresh_token: str) -> None:
        """Revoke one refresh token. Unknown tokens are ignored."""
        if self.store.delete_refresh_token(refresh_token):
            logger.info("Session closed")

    @_store_guard
    def revoke_all_sessions(self, user_id: int) -> int:
        """Revoke every refresh token the user holds. Returns how many were removed."""
        revoked = self.store.delete_user_refresh_tokens(user_id)
        logger.info("Revoked %d session(s) for user_id=%s", revoked, user_id)
        return revoked

    @_store_guard
    def current_user(self, claims: TokenClaims) -> User:
        """Resolve the user named by a verified access token."""
        user = self.store.get_user_by_id(claims.user_id)
        if user is None:
            raise UserNotFound()
        return user

    def _issue_pair(self, user: User) -> SessionTokens:
        access_token = self.issuer.issue_access_token(user.id, user.email, user.display_name)
        refresh_token, refresh_expiry = self.issuer.issue_refresh_token(user.id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.issuer.access_ttl.total_seconds()),
            refresh_token_expiry=refresh_expiry,
        )

    def _on_refresh_reuse(self, claims: TokenClaims) -> None:
        # A correctly signed, unexpired refresh token with no record was either
        # rotated already or revoked by logout. From here the two look alike.
        logger.warning("Refresh token reuse detected for user_id=%s", claims.user_id)
        if self.revoke_sessions_on_reuse:
            revoked = self.store.delete_user_refresh_tokens(claims.user_id)
            logger.warning("Revoked %d session(s) for user_id=%s after refresh token reuse", revoked, claims.user_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @_store_guard
    def forgot_password(self, email: str) -> None:
        """Send a reset OTP if the email belongs to a user. Silent otherwise."""
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email %s", redact_email(email))
            return

        otp = generate_otp()
        self.store.upsert_password_reset(
            PasswordResetRequest(email=email, otp_code=otp, otp_expires_at=self._now() + self.otp_ttl)
        )
        logger.info("Password reset pending for user_id=%s", user.id)
        self._notify(self.notifier.send_password_reset_otp, email, otp)

    @_store_guard
    def reset_password(self, email: str, otp: str, new_password: str) -> None:
        """Consume the reset OTP and replace the user's password.

        Raises NoResetRequest, OTPExpired (after deleting the stale record),
        OTPMismatch or SamePassword when new_password equals the current one.
        """
        reset = self.store.get_password_reset(email)
        if reset is None:
            raise NoResetRequest()
        if self._now() > reset.otp_expires_at:
            self.store.delete_password_reset(email, otp_code=reset.otp_code)
            raise OTPExpired()
        if not _codes_match(otp, reset.otp_code):
            raise OTPMismatch()

        user = self.store.get_user_by_email(email)
        if user is None:
            self.store.delete_password_reset(email)
            raise UserNotFound()
        if verify_password(new_password, user.password_hash):
            raise SamePassword()

        if not self.store.complete_password_reset(email, reset.otp_code, hash_password(new_password)):
            raise NoResetRequest()
        logger.info("Password reset completed for user_id=%s", user.id)

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _notify(self, send: Callable[[str, str, int], None], email: str, otp: str) -> None:
        # The OTP record is already committed; a failed send leaves it in
        # place and the user can ask for a new code.
        try:
            send(email, otp, self.otp_ttl_minutes)
        except NotificationError:
            logger.exception("OTP delivery to %s failed", redact_email(email))
