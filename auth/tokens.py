"""
auth/tokens.py -- Token Engine: mint and validate signed access/refresh pairs.

Security design decisions:
  JWT: python-jose with HS256. Every token carries sub (member email),
       member_id, type ("access" | "refresh"), a random jti, iat and exp.
       Tokens are verifiable without a storage round trip.

  jti: a random per-token identifier. Two pairs minted for the same member in
       the same second would otherwise be byte-identical, and an old refresh
       token would be indistinguishable from the one that superseded it.

  Signing key: injected through TokenConfig, built once from Settings at
       startup. The engine holds no module-level state, so tests construct an
       engine with a fixed key and a controllable clock.

  Refresh: the engine validates the refresh token the store holds for the
       member. AuthService only gets this far when the client presented that
       same token. Any validation failure becomes ExpiredRefreshToken. The
       caller must log in again; nothing retries.

  Clock: exp is checked against the injected clock, the same one issue()
       stamps iat and exp with, not against jose's wall-clock check.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.errors import ExpiredRefreshToken, ExpiredToken, MalformedToken
from auth.models import TokenPair

if TYPE_CHECKING:
    from auth.models import Member
    from core.config import Settings

logger = logging.getLogger("membergate.auth.tokens")

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "member_id", "type", "exp")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenConfig:
    """Signing key and lifetimes. Read-only after startup."""

    secret_key: str
    access_ttl: timedelta = timedelta(hours=2)
    refresh_ttl: timedelta = timedelta(days=3)

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenConfig:
        return cls(
            secret_key=settings.secret_key,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        )


class TokenEngine:
    """Stateless issuance and validation of signed token pairs.

    Usage:
        engine = TokenEngine(TokenConfig.from_settings(get_settings()))
        pair = engine.issue("a@x.com", member_id=7)
        claims = engine.validate(pair.access_token, expected_type="access")
    """

    def __init__(self, config: TokenConfig, clock: Callable[[], datetime] = utc_now) -> None:
        if not config.secret_key:
            raise ValueError("TokenEngine requires a signing key.")
        self._config = config
        self._clock = clock

    @property
    def access_ttl(self) -> timedelta:
        return self._config.access_ttl

    def issue(self, subject: str, member_id: int) -> TokenPair:
        """Sign a fresh access/refresh pair for the given identity claim.

        No side effects. Persisting the refresh token on the member is the
        caller's job (AuthService, through MemberStore).
        """
        if not subject:
            raise ValueError("Cannot issue tokens for an empty subject.")
        now = self._clock()
        access_exp = now + self._config.access_ttl
        refresh_exp = now + self._config.refresh_ttl
        return TokenPair(
            access_token=self._encode(subject, member_id, ACCESS, now, access_exp),
            access_expires_at=access_exp,
            refresh_token=self._encode(subject, member_id, REFRESH, now, refresh_exp),
            refresh_expires_at=refresh_exp,
        )

    def validate(self, token: str | None, expected_type: str | None = None) -> dict:
        """Decode and verify a token. Returns the claims dict.

        Raises:
            ExpiredToken:   signature is valid but exp is behind the engine's clock.
            MalformedToken: bad signature, bad structure, missing claims, or a
                            token of the wrong type (e.g. a refresh token
                            presented as an access token).
        """
        if not token:
            raise MalformedToken("No token supplied.")
        try:
            claims = jwt.decode(
                token, self._config.secret_key, algorithms=[ALGORITHM], options={"verify_exp": False}
            )
        except JWTError as exc:
            raise MalformedToken() from exc

        if any(name not in claims for name in _REQUIRED_CLAIMS):
            raise MalformedToken("Token is missing required claims.")
        if not isinstance(claims["exp"], (int, float)):
            raise MalformedToken("Token exp is not a timestamp.")
        if self._clock().timestamp() > claims["exp"]:
            raise ExpiredToken()
        if expected_type is not None and claims["type"] != expected_type:
            raise MalformedToken(f"Expected a {expected_type} token.")
        return claims

    def refresh(self, member: Member) -> TokenPair:
        """Validate the member's stored refresh token and mint a new pair.

        Raises ExpiredRefreshToken for every failure: no stored token, expired,
        malformed, or issued to a different member.
        """
        try:
            claims = self.validate(member.refresh_token, expected_type=REFRESH)
        except (ExpiredToken, MalformedToken) as exc:
            logger.info("Refresh rejected for member %s: %s", member.id, exc.kind.value)
            raise ExpiredRefreshToken() from exc

        if claims["sub"] != member.email or claims["member_id"] != member.id:
            logger.warning("Refresh token subject mismatch for member %s", member.id)
            raise ExpiredRefreshToken()
        return self.issue(member.email, member.id)

    def _encode(self, subject: str, member_id: int, token_type: str, now: datetime, expire: datetime) -> str:
        payload = {
            "sub": subject,
            "member_id": member_id,
            "type": token_type,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": expire,
        }
        return jwt.encode(payload, self._config.secret_key, algorithm=ALGORITHM)
