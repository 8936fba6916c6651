"""
tests/test_auth_service.py -- Unit tests for auth/service.py (AuthService).

Covers:
  - register(): error precedence (DuplicateMember before NotCompleteAuth),
    verified registration succeeds exactly once, OAuth sign-up starts inactive
  - login(): exact match issues a pair; unknown email and wrong password are
    indistinguishable; a later login supersedes the earlier refresh token
  - refresh_access_token(): rotation, superseded-token rejection, lost CAS
  - account maintenance: nickname, password change, withdrawal
"""

from __future__ import annotations

import pytest

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
from auth.models import Member, OAuthCredential, PasswordCredential, Profile, VerificationStatus
from auth.tokens import ACCESS

PASSWORD = "correct-horse"


def _register(auth_service, email: str, password: str = PASSWORD, nickname: str = "nick"):
    return auth_service.register(PasswordCredential(email, password), Profile(nickname=nickname))


class TestRequestVerification:
    def test_code_goes_to_sender(self, auth_service, sender):
        attempt = auth_service.request_verification("new@example.com")
        assert sender.sent["new@example.com"] == attempt.code
        assert auth_service.verification_status("new@example.com") is VerificationStatus.UNVERIFIED

    def test_registered_email_cannot_request(self, auth_service, verified_email):
        _register(auth_service, verified_email)
        with pytest.raises(DuplicateMember):
            auth_service.request_verification(verified_email)


class TestRegister:
    def test_verified_registration_succeeds(self, auth_service, member_store, token_engine, verified_email):
        result = _register(auth_service, verified_email)
        assert result.created is True
        assert result.is_active is True
        member = member_store.find_by_id(result.member_id)
        assert member.email == verified_email
        assert member.nickname == "nick"
        assert member.refresh_token == result.tokens.refresh_token
        assert token_engine.validate(result.tokens.access_token, ACCESS)["member_id"] == result.member_id

    def test_password_is_stored_hashed(self, auth_service, member_store, verified_email):
        result = _register(auth_service, verified_email)
        assert member_store.find_by_id(result.member_id).password != PASSWORD

    def test_second_registration_is_duplicate(self, auth_service, verified_email):
        _register(auth_service, verified_email)
        with pytest.raises(DuplicateMember):
            _register(auth_service, verified_email)

    def test_unverified_email_is_not_complete(self, auth_service):
        auth_service.request_verification("pending@example.com")
        with pytest.raises(NotCompleteAuth):
            _register(auth_service, "pending@example.com")

    def test_never_requested_email_is_not_complete(self, auth_service):
        with pytest.raises(NotCompleteAuth):
            _register(auth_service, "stranger@example.com")

    def test_duplicate_reported_before_verification(self, auth_service, member_store, verifier):
        """An existing member's email is a duplicate even with no verified attempt."""
        member_store.create(Member(email="taken@example.com"), password="x")
        assert not verifier.is_verified("taken@example.com")
        with pytest.raises(DuplicateMember):
            _register(auth_service, "taken@example.com")

    def test_oauth_registration_starts_inactive(self, auth_service, member_store):
        credential = OAuthCredential(provider="kakao", provider_user_id="42", email="k@example.com", nickname="kk")
        result = auth_service.register(credential)
        member = member_store.find_by_id(result.member_id)
        assert result.is_active is False
        assert member.platform == "kakao"
        assert member.oauth_subject == "42"
        assert member.nickname == "kk"
        assert member.password is None


class TestLogin:
    def test_exact_match_issues_pair(self, auth_service, member_store, verified_email):
        registered = _register(auth_service, verified_email)
        result = auth_service.login(verified_email, PASSWORD)
        assert result.member_id == registered.member_id
        assert result.created is False
        assert member_store.find_by_id(result.member_id).refresh_token == result.tokens.refresh_token

    def test_wrong_password(self, auth_service, verified_email):
        _register(auth_service, verified_email)
        with pytest.raises(NotFoundUser):
            auth_service.login(verified_email, "wrong")

    def test_unknown_email(self, auth_service):
        with pytest.raises(NotFoundUser):
            auth_service.login("ghost@example.com", PASSWORD)

    def test_oauth_only_member_cannot_password_login(self, auth_service):
        auth_service.register(OAuthCredential("google", "sub-1", "g@example.com"))
        with pytest.raises(NotFoundUser):
            auth_service.login("g@example.com", "")


class TestRefresh:
    def test_refresh_rotates_stored_token(self, auth_service, member_store, verified_email):
        result = _register(auth_service, verified_email)
        pair = auth_service.refresh_access_token(result.member_id, result.tokens.refresh_token)
        assert pair.refresh_token != result.tokens.refresh_token
        assert member_store.find_by_id(result.member_id).refresh_token == pair.refresh_token

    def test_token_of_another_member_is_rejected(self, auth_service, verified_email):
        """The presented token must be the one stored for that member id."""
        result = _register(auth_service, verified_email)
        other = auth_service.oauth_login("kakao", "55", "other@kakao.example")
        with pytest.raises(ExpiredRefreshToken):
            auth_service.refresh_access_token(result.member_id, other.tokens.refresh_token)

    def test_token_superseded_by_later_login(self, auth_service, verified_email):
        first = _register(auth_service, verified_email)
        auth_service.login(verified_email, PASSWORD)
        with pytest.raises(ExpiredRefreshToken):
            auth_service.refresh_access_token(first.member_id, first.tokens.refresh_token)

    def test_rotated_token_cannot_be_replayed(self, auth_service, verified_email):
        result = _register(auth_service, verified_email)
        auth_service.refresh_access_token(result.member_id, result.tokens.refresh_token)
        with pytest.raises(ExpiredRefreshToken):
            auth_service.refresh_access_token(result.member_id, result.tokens.refresh_token)

    def test_lost_race_is_rejected(self, auth_service, member_store, verified_email, monkeypatch):
        """If another refresh swaps the stored token first, this one fails."""
        result = _register(auth_service, verified_email)
        monkeypatch.setattr(member_store, "swap_refresh_token", lambda *args: False)
        with pytest.raises(ExpiredRefreshToken):
            auth_service.refresh_access_token(result.member_id, result.tokens.refresh_token)

    def test_unknown_member(self, auth_service):
        with pytest.raises(NotFound):
            auth_service.refresh_access_token(9999, "unknown-member-token")


class TestOAuthLogin:
    def test_first_sight_creates_member(self, auth_service):
        result = auth_service.oauth_login("kakao", "77", "new@kakao.example", "newbie")
        assert result.created is True
        assert result.is_active is False

    def test_second_login_reuses_member(self, auth_service):
        first = auth_service.oauth_login("kakao", "77", "new@kakao.example")
        second = auth_service.oauth_login("kakao", "77", "new@kakao.example")
        assert second.created is False
        assert second.member_id == first.member_id

    def test_existing_local_member_logs_in(self, auth_service, verified_email):
        """The email is the identity key: a provider login reaches the local member."""
        registered = _register(auth_service, verified_email)
        result = auth_service.oauth_login("google", "sub-9", verified_email)
        assert result.member_id == registered.member_id
        assert result.is_active is True


class TestAccountMaintenance:
    def test_update_nickname(self, auth_service, member_store, verified_email):
        result = _register(auth_service, verified_email)
        auth_service.update_nickname(result.member_id, "renamed")
        assert member_store.find_by_id(result.member_id).nickname == "renamed"

    def test_same_nickname(self, auth_service, verified_email):
        result = _register(auth_service, verified_email)
        with pytest.raises(SameNickname):
            auth_service.update_nickname(result.member_id, "nick")

    def test_change_password(self, auth_service, verified_email):
        result = _register(auth_service, verified_email)
        auth_service.change_password(result.member_id, PASSWORD, "a-new-secret")
        assert auth_service.login(verified_email, "a-new-secret").member_id == result.member_id
        with pytest.raises(NotFoundUser):
            auth_service.login(verified_email, PASSWORD)

    def test_change_password_wrong_current_checked_first(self, auth_service, verified_email):
        result = _register(auth_service, verified_email)
        with pytest.raises(DifferentPassword):
            auth_service.change_password(result.member_id, "wrong", "wrong")

    def test_change_password_same(self, auth_service, verified_email):
        result = _register(auth_service, verified_email)
        with pytest.raises(SamePassword):
            auth_service.change_password(result.member_id, PASSWORD, PASSWORD)

    def test_change_password_unknown_member(self, auth_service):
        with pytest.raises(NotFoundUser):
            auth_service.change_password(404, PASSWORD, "other")

    def test_get_profile_unknown(self, auth_service):
        with pytest.raises(NotFound):
            auth_service.get_profile(404)


class TestWithdraw:
    def test_withdraw_requires_password(self, auth_service, verified_email):
        result = _register(auth_service, verified_email)
        with pytest.raises(DifferentPassword):
            auth_service.withdraw(result.member_id, "wrong")
        with pytest.raises(DifferentPassword):
            auth_service.withdraw(result.member_id, None)

    def test_withdrawn_email_must_verify_again(self, auth_service, member_store, sender, verified_email):
        result = _register(auth_service, verified_email)
        auth_service.withdraw(result.member_id, PASSWORD)
        assert member_store.find_by_id(result.member_id) is None
        with pytest.raises(NotCompleteAuth):
            _register(auth_service, verified_email)

        auth_service.request_verification(verified_email)
        auth_service.verify_email(verified_email, sender.sent[verified_email])
        assert _register(auth_service, verified_email).created is True

    def test_oauth_member_withdraws_without_password(self, auth_service, member_store):
        result = auth_service.oauth_login("kakao", "5", "o@example.com")
        auth_service.withdraw(result.member_id, None)
        assert not member_store.exists("o@example.com")
