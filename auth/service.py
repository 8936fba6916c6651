"""
auth/service.py -- Auth Orchestrator: login, registration, refresh, OAuth login.

AuthService is the single source of truth for error precedence. Each
operation runs its checks in a fixed order and stops at the first failure;
later checks are never evaluated. Every failure is a typed AuthError that
propagates to the caller unchanged -- nothing here catches and retries.

Registration is one operation over a tagged credential source:
  PasswordCredential -- requires a VERIFIED email attempt, member starts active.
  OAuthCredential    -- the provider vouches for the email, no verification
                        attempt is consulted, member starts inactive until
                        the profile is completed.

Verification is consumed implicitly. register() never clears the VERIFIED
attempt; a second registration fails with DuplicateMember because the member
now exists. withdraw() discards the attempt, so an email that re-registers
after withdrawal must verify again.

Known gap: register() creates the member and then persists the refresh
token in two store calls. A request abandoned between them leaves a member
with no stored refresh token; the next login repairs it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.delivery import CodeSender, LoggingCodeSender
from auth.errors import (
    DifferentPassword,
    DuplicateMember,
    ExpiredRefreshToken,
    NotCompleteAuth,
    NotFound,
    NotFoundUser,
    SameNickname,
    SamePassword,
)
from auth.models import (
    PLATFORM_LOCAL,
    AuthResult,
    Credential,
    Member,
    OAuthCredential,
    PasswordCredential,
    Profile,
    TokenPair,
    VerificationAttempt,
    VerificationStatus,
)
from auth.passwords import verify_password
from auth.store import MemberStore
from auth.tokens import TokenEngine
from auth.verification import VerificationService

logger = logging.getLogger("membergate.auth")


class AuthService:
    """Compose MemberStore, TokenEngine and VerificationService per request intent.

    Usage:
        service = AuthService(members, tokens, verifier)
        service.request_verification("a@x.com")
        service.verify_email("a@x.com", "123456")
        result = service.register(PasswordCredential("a@x.com", "pw"), Profile(nickname="a"))
    """

    def __init__(
        self,
        members: MemberStore,
        tokens: TokenEngine,
        verifier: VerificationService,
        sender: CodeSender | None = None,
    ) -> None:
        self.members = members
        self.tokens = tokens
        self.verifier = verifier
        self.sender: CodeSender = sender or LoggingCodeSender()

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def is_member(self, email: str) -> bool:
        return self.members.exists(email)

    def request_verification(self, email: str) -> VerificationAttempt:
        """Issue a verification code for an email that is not yet registered.

        Raises DuplicateMember if the email already belongs to a member.
        """
        if self.members.exists(email):
            raise DuplicateMember()
        attempt = self.verifier.issue_code(email)
        self.sender.send(email, attempt.code, int(self.verifier.window.total_seconds()))
        return attempt

    def verify_email(self, email: str, code: str) -> bool:
        return self.verifier.check_code(email, code)

    def verification_status(self, email: str) -> VerificationStatus | None:
        return self.verifier.status(email)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, credential: Credential, profile: Profile | None = None) -> AuthResult:
        """Create a member from a credential source and issue its first token pair.

        Order for PasswordCredential:
          1. DuplicateMember  -- email already registered
          2. NotCompleteAuth  -- email not VERIFIED
          3. create member (active)
          4. issue tokens, persist refresh token

        Order for OAuthCredential:
          1. DuplicateMember  -- email already registered
          2. create member (inactive, platform = provider, no password)
          3. issue tokens, persist refresh token
        """
        profile = profile or Profile()

        if self.members.exists(credential.email):
            raise DuplicateMember()

        if isinstance(credential, PasswordCredential):
            if not self.verifier.is_verified(credential.email):
                raise NotCompleteAuth()
            member = _member_from_profile(credential.email, profile, is_active=True, platform=PLATFORM_LOCAL)
            member_id = self.members.create(member, password=credential.password)
        elif isinstance(credential, OAuthCredential):
            member = _member_from_profile(credential.email, profile, is_active=False, platform=credential.provider)
            member.oauth_subject = credential.provider_user_id
            if credential.nickname and not member.nickname:
                member.nickname = credential.nickname
            member_id = self.members.create(member)
        else:
            raise TypeError(f"Unsupported credential source: {type(credential).__name__}")

        tokens = self._issue_and_store(credential.email, member_id)
        logger.info("Member %s registered via %s", member_id, member.platform)
        return AuthResult(tokens=tokens, member_id=member_id, is_active=member.is_active, created=True)

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate by exact (email, password) match and issue a fresh pair.

        The new refresh token overwrites the stored one; any earlier refresh
        token for this member stops being honoured.
        """
        member = self.members.find_by_email_and_password(email, password)
        if member is None:
            raise NotFoundUser()
        tokens = self._issue_and_store(member.email, member.id)
        logger.info("Member %s logged in", member.id)
        return AuthResult(tokens=tokens, member_id=member.id, is_active=member.is_active)

    def oauth_login(self, provider: str, provider_user_id: str, email: str, nickname: str | None = None) -> AuthResult:
        """Log in a provider-authenticated user, creating the member on first sight.

        created=True in the result means this call created the member and the
        client should route it to profile completion.
        """
        member = self.members.find_by_email(email)
        if member is None:
            credential = OAuthCredential(
                provider=provider, provider_user_id=provider_user_id, email=email, nickname=nickname
            )
            try:
                return self.register(credential)
            except DuplicateMember:
                # A concurrent callback for the same email created the member first.
                member = self.members.find_by_email(email)
                if member is None:
                    raise

        tokens = self._issue_and_store(member.email, member.id)
        logger.info("Member %s logged in via %s", member.id, provider)
        return AuthResult(tokens=tokens, member_id=member.id, is_active=member.is_active, created=False)

    def refresh_access_token(self, member_id: int, presented_token: str) -> TokenPair:
        """Mint a new pair in exchange for the member's current refresh token.

        Order:
          1. NotFound            -- no member with that id
          2. ExpiredRefreshToken -- presented token is not the stored one (superseded)
          3. ExpiredRefreshToken -- stored token expired/malformed (from TokenEngine)
          4. ExpiredRefreshToken -- another refresh replaced the stored token first
        """
        member = self.members.find_by_id(member_id)
        if member is None:
            raise NotFound()
        if member.refresh_token is None or presented_token != member.refresh_token:
            logger.info("Superseded refresh token presented for member %s", member_id)
            raise ExpiredRefreshToken()

        tokens = self.tokens.refresh(member)
        if not self.members.swap_refresh_token(member.id, member.refresh_token, tokens.refresh_token):
            logger.info("Refresh for member %s lost a race with a concurrent refresh/login", member_id)
            raise ExpiredRefreshToken()
        return tokens

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------

    def get_profile(self, member_id: int) -> Member:
        member = self.members.find_by_id(member_id)
        if member is None:
            raise NotFound()
        return member

    def update_nickname(self, member_id: int, nickname: str) -> Member:
        member = self._require_member(member_id)
        if member.nickname == nickname:
            raise SameNickname()
        self.members.update(member_id, nickname=nickname)
        member.nickname = nickname
        return member

    def change_password(self, member_id: int, current_password: str, new_password: str) -> None:
        """Replace the password after confirming the current one.

        Order: NotFoundUser, DifferentPassword (current does not match),
        SamePassword (new equals current).
        """
        member = self._require_member(member_id)
        if not verify_password(current_password, member.password):
            raise DifferentPassword()
        if current_password == new_password:
            raise SamePassword()
        self.members.update_password(member_id, new_password)
        logger.info("Password changed for member %s", member_id)

    def withdraw(self, member_id: int, password: str | None) -> None:
        """Delete the member after confirming its password.

        OAuth-only members have no password and confirm with None. The email's
        verification attempt is discarded with the member.
        """
        member = self._require_member(member_id)
        if member.password is not None and (password is None or not verify_password(password, member.password)):
            raise DifferentPassword()
        self.members.delete(member_id)
        self.verifier.discard(member.email)
        logger.info("Member %s withdrew", member_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_member(self, member_id: int) -> Member:
        member = self.members.find_by_id(member_id)
        if member is None:
            raise NotFoundUser()
        return member

    def _issue_and_store(self, email: str, member_id: int) -> TokenPair:
        tokens = self.tokens.issue(email, member_id)
        self.members.set_refresh_token(member_id, tokens.refresh_token)
        return tokens


def _member_from_profile(email: str, profile: Profile, is_active: bool, platform: str) -> Member:
    return Member(
        email=email,
        is_active=is_active,
        platform=platform,
        nickname=profile.nickname,
        user_name=profile.user_name,
        birth=profile.birth,
        gender=profile.gender,
        phone=profile.phone,
        address=profile.address,
        area_intrs=profile.area_intrs,
    )
