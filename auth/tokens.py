"""
auth/tokens.py -- Signing and verification of access and refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Both token kinds are signed with SECRET_KEY and
       carry an `aud` claim naming their purpose ("access" or "refresh").
       verify() insists on an exact audience match, so a leaked access token
       (sent on every API call, far more exposed) can never be replayed at
       the refresh endpoint, and a refresh token never authorizes an API call.

  Claims: every decode is turned into a TokenClaims dataclass with its
       required fields checked. A token that is validly signed but missing a
       field is rejected as InvalidToken rather than handed on half-empty.

  jti: each token gets a random id. Without it, two refresh tokens issued to
       the same user within the same second would be byte-identical, and
       rotation would try to replace a token with itself.

  Expiry is checked by jose against the wall clock. Timestamps are whole
       seconds, matching the JWT `exp` encoding, so the expiry returned to
       callers equals the one embedded in the token.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidToken, TokenExpired, WrongAudience
from auth.models import ACCESS_AUDIENCE, REFRESH_AUDIENCE, TokenClaims
from core.config import Settings

logger = logging.getLogger("authservice.tokens")

_ALGORITHM = "HS256"
_AUDIENCES = (ACCESS_AUDIENCE, REFRESH_AUDIENCE)


class TokenIssuer:
    """Issues and verifies audience-tagged JWTs.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token = issuer.issue_access_token(1, "ann@x.com", "Ann")
        claims = issuer.verify(token, "access")
    """

    def __init__(self, secret_key: str, access_ttl: timedelta, refresh_ttl: timedelta) -> None:
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            secret_key=settings.secret_key,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user_id: int, email: str, display_name: str) -> str:
        """Sign a short-lived access token carrying the user's identity."""
        token, _ = self._sign(
            {"sub": str(user_id), "email": email, "name": display_name},
            ACCESS_AUDIENCE,
            self.access_ttl,
        )
        return token

    def issue_refresh_token(self, user_id: int) -> tuple[str, datetime]:
        """Sign a long-lived refresh token. Returns (token, expires_at).

        The token string is also the lookup key of its RefreshTokenRecord.
        """
        return self._sign({"sub": str(user_id)}, REFRESH_AUDIENCE, self.refresh_ttl)

    def _sign(self, claims: dict, audience: str, ttl: timedelta) -> tuple[str, datetime]:
        issued = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = issued + ttl
        payload = {
            **claims,
            "aud": audience,
            "iat": issued,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM), expires_at

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_audience: str) -> TokenClaims:
        """Check signature, expiry and audience; return the validated claims.

        Raises:
            TokenExpired:  signature is good but `exp` has passed.
            WrongAudience: signature is good but the token is for another purpose.
            InvalidToken:  anything else (bad signature, malformed, missing claims).
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise InvalidToken() from exc
        claims = _to_claims(payload)
        if claims.audience != expected_audience:
            raise WrongAudience()
        return claims

    def peek(self, token: str) -> TokenClaims:
        """Check the signature only and return the claims, expired or not.

        The refresh endpoint uses this on the (normally already expired)
        bearer access token to confirm it belongs to the same user.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_aud": False, "verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidToken() from exc
        return _to_claims(payload)


def _to_claims(payload: dict) -> TokenClaims:
    audience = payload.get("aud")
    if audience not in _AUDIENCES:
        raise InvalidToken()
    try:
        user_id = int(payload["sub"])
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidToken() from exc
    email = payload.get("email")
    display_name = payload.get("name")
    if audience == ACCESS_AUDIENCE and (not isinstance(email, str) or not isinstance(display_name, str)):
        raise InvalidToken()
    return TokenClaims(
        user_id=user_id,
        audience=audience,
        expires_at=expires_at,
        email=email,
        display_name=display_name,
        token_id=payload.get("jti"),
    )
