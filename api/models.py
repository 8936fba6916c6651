"""
API request and response models for membergate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import date, datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator

from auth.models import AuthResult, Member, Profile, TokenPair

# bcrypt only looks at the first 72 bytes of a password.
_PASSWORD = Field(min_length=1, max_length=72)


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


# Passwords are never stripped; these are for the fields around them.
_Email = Annotated[EmailStr, BeforeValidator(_strip)]
_Text = Annotated[Optional[str], BeforeValidator(_strip)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: _Email
    password: str = _PASSWORD


class JoinRequest(BaseModel):
    """Request body for POST /api/v1/auth/join.

    The email must have passed POST /auth/email/verify first. Profile fields
    are optional; surrounding whitespace is trimmed from them and from the
    email, never from the password.
    """

    email: _Email
    password: str = _PASSWORD
    nickname: _Text = Field(default=None, max_length=100)
    user_name: _Text = Field(default=None, max_length=100)
    birth: Optional[date] = None
    gender: _Text = Field(default=None, max_length=10)
    phone: _Text = Field(default=None, max_length=30)
    address: _Text = Field(default=None, max_length=255)
    area_intrs: _Text = Field(default=None, max_length=255)

    def to_profile(self) -> Profile:
        return Profile(
            nickname=self.nickname,
            user_name=self.user_name,
            birth=self.birth.isoformat() if self.birth else None,
            gender=self.gender,
            phone=self.phone,
            address=self.address,
            area_intrs=self.area_intrs,
        )


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/token.

    refresh_token must be the member's current refresh token; a token
    superseded by a later login or an earlier refresh is rejected.
    """

    member_id: int = Field(ge=1)
    refresh_token: str = Field(min_length=1)


class EmailRequest(BaseModel):
    """Request body for POST /api/v1/auth/email/request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class EmailVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/email/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    code: str = Field(min_length=1, max_length=12)

    @field_validator("code")
    @classmethod
    def code_is_alphanumeric(cls, value: str) -> str:
        if not value.isalnum():
            raise ValueError("code must be alphanumeric")
        return value


class NicknameUpdate(BaseModel):
    """Request body for PATCH /api/v1/members/me/nickname."""

    model_config = ConfigDict(str_strip_whitespace=True)

    nickname: str = Field(min_length=1, max_length=100)


class PasswordChange(BaseModel):
    """Request body for PATCH /api/v1/members/me/password."""

    current_password: str = _PASSWORD
    new_password: str = _PASSWORD


class WithdrawRequest(BaseModel):
    """Request body for DELETE /api/v1/members/me. OAuth-only members omit password."""

    password: Optional[str] = Field(default=None, max_length=72)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """A token pair as returned to clients."""

    model_config = ConfigDict(frozen=True)

    grant_type: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            grant_type=pair.grant_type,
            access_token=pair.access_token,
            access_expires_at=pair.access_expires_at,
            refresh_token=pair.refresh_token,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    """Response for login, join and OAuth callback.

    is_active False means the profile is incomplete (OAuth sign-up).
    created True means this request created the member.
    """

    model_config = ConfigDict(frozen=True)

    token: TokenResponse
    member_id: int
    is_active: bool
    created: bool = False

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            token=TokenResponse.from_pair(result.tokens),
            member_id=result.member_id,
            is_active=result.is_active,
            created=result.created,
        )


class VerificationIssuedResponse(BaseModel):
    """Response for POST /api/v1/auth/email/request. The code itself is never returned."""

    model_config = ConfigDict(frozen=True)

    email: str
    expires_at: datetime


class VerificationStatusResponse(BaseModel):
    """Response for verify and status endpoints. status is None if no code was ever issued."""

    model_config = ConfigDict(frozen=True)

    email: str
    status: Optional[str]


class ExistsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    exists: bool


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ProfileResponse(BaseModel):
    """Public view of a member. Never includes the password hash or refresh token."""

    model_config = ConfigDict(frozen=True)

    member_id: int
    email: str
    nickname: Optional[str]
    platform: str
    is_active: bool
    area_intrs: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_member(cls, member: Member) -> "ProfileResponse":
        return cls(
            member_id=member.id,
            email=member.email,
            nickname=member.nickname,
            platform=member.platform,
            is_active=member.is_active,
            area_intrs=member.area_intrs,
            created_at=member.created_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
