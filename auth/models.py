"""
auth/models.py -- Domain dataclasses for membership and authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work.

Credential sources are modelled as a tagged union (PasswordCredential |
OAuthCredential) so AuthService.register() has one signature and branches on
the variant, instead of one overload per sign-up channel.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union

PLATFORM_LOCAL = "local"


@dataclass
class Member:
    """A registered member's account record (the Identity).

    password holds a bcrypt hash, never plaintext. It is None for members who
    signed up through an OAuth provider -- the provider is their credential
    authority. refresh_token is the ONLY refresh token honoured for this
    member; every login/refresh overwrites it.

    is_active doubles as the "profile complete" flag: OAuth sign-ups start
    inactive until the member fills in the remaining profile fields.
    """

    email: str
    id: int | None = None
    password: str | None = None  # bcrypt hash; None = OAuth-only member
    refresh_token: str | None = None
    is_active: bool = True
    platform: str = PLATFORM_LOCAL  # "local", "kakao", "google"
    oauth_subject: str | None = None  # provider's stable user ID
    nickname: str | None = None
    user_name: str | None = None
    birth: str | None = None  # ISO date, YYYY-MM-DD
    gender: str | None = None
    phone: str | None = None
    address: str | None = None
    area_intrs: str | None = None  # comma-separated areas of interest
    created_at: str | None = None


@dataclass
class Profile:
    """Optional profile fields supplied at registration time."""

    nickname: str | None = None
    user_name: str | None = None
    birth: str | None = None
    gender: str | None = None
    phone: str | None = None
    address: str | None = None
    area_intrs: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """A freshly minted access/refresh token pair. Immutable once issued."""

    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    grant_type: str = "Bearer"


class VerificationStatus(str, Enum):
    """Persisted states of an email-verification attempt.

    "invalid" is deliberately absent: it is an outcome of a failed check, not
    something the store ever holds.
    """

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    EXPIRED = "expired"


@dataclass
class VerificationAttempt:
    """One issued code for one email. A newer attempt replaces the older one."""

    email: str
    code: str
    issued_at: datetime
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    id: int | None = None


# ---------------------------------------------------------------------------
# Credential sources (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordCredential:
    """Email + password sign-up. Requires a verified email."""

    email: str
    password: str


@dataclass(frozen=True)
class OAuthCredential:
    """Sign-up through a third-party provider. The provider vouches for the email."""

    provider: str  # "kakao", "google"
    provider_user_id: str
    email: str
    nickname: str | None = None


Credential = Union[PasswordCredential, OAuthCredential]


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthResult:
    """What login, registration and OAuth login hand back to the HTTP layer.

    created is only meaningful for OAuth login: True when the call created the
    member, which tells the client to send the member to profile completion.
    """

    tokens: TokenPair
    member_id: int
    is_active: bool
    created: bool = False
