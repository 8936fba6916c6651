"""
tests/test_verification.py -- Unit tests for auth/verification.py.

Covers the verification state machine against a real in-memory store:
  - issue then check inside the window verifies
  - a check after the window raises ExpiredAuth AND leaves EXPIRED persisted
  - a wrong code raises InvalidVerifCode and writes nothing
  - a check with nothing pending raises InvalidAuth
  - reissuing supersedes the earlier code, whatever its status
  - a reissue landing mid-check fails the stale code and keeps the new one
  - status() lazily expires an elapsed attempt; purge_stale() removes old rows
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import ExpiredAuth, InvalidAuth, InvalidVerifCode
from auth.models import VerificationStatus
from auth.verification import VerificationService, generate_code

EMAIL = "someone@example.com"


class TestGenerateCode:
    def test_default_is_six_digits(self):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()

    def test_length_is_configurable(self):
        assert len(generate_code(8)) == 8


class TestCheckCode:
    def test_issue_then_check_within_window(self, verifier, verification_store, clock):
        attempt = verifier.issue_code(EMAIL)
        clock.advance(minutes=2)
        assert verifier.check_code(EMAIL, attempt.code) is True
        assert verification_store.find_by_email(EMAIL).status is VerificationStatus.VERIFIED
        assert verifier.is_verified(EMAIL)

    def test_check_at_exact_window_edge_still_verifies(self, verifier, clock):
        attempt = verifier.issue_code(EMAIL)
        clock.advance(minutes=3)
        assert verifier.check_code(EMAIL, attempt.code) is True

    def test_check_after_window_persists_expired_then_raises(self, verifier, verification_store, clock):
        """The expiry is written even though the call fails."""
        attempt = verifier.issue_code(EMAIL)
        clock.advance(minutes=3, microseconds=1)
        with pytest.raises(ExpiredAuth):
            verifier.check_code(EMAIL, attempt.code)
        assert verification_store.find_by_email(EMAIL).status is VerificationStatus.EXPIRED

    def test_second_check_after_expiry_sees_no_pending_attempt(self, verifier, clock):
        attempt = verifier.issue_code(EMAIL)
        clock.advance(minutes=4)
        with pytest.raises(ExpiredAuth):
            verifier.check_code(EMAIL, attempt.code)
        with pytest.raises(InvalidAuth):
            verifier.check_code(EMAIL, attempt.code)

    def test_wrong_code_does_not_mutate(self, verifier, verification_store):
        attempt = verifier.issue_code(EMAIL)
        wrong = "000000" if attempt.code != "000000" else "111111"
        with pytest.raises(InvalidVerifCode):
            verifier.check_code(EMAIL, wrong)
        stored = verification_store.find_by_email(EMAIL)
        assert stored.status is VerificationStatus.UNVERIFIED
        assert verifier.check_code(EMAIL, attempt.code) is True

    def test_expired_wins_over_wrong_code(self, verifier, clock):
        """Past the window, a wrong code reports expiry rather than a mismatch."""
        verifier.issue_code(EMAIL)
        clock.advance(minutes=5)
        with pytest.raises(ExpiredAuth):
            verifier.check_code(EMAIL, "not-it")

    def test_check_without_issue(self, verifier):
        with pytest.raises(InvalidAuth):
            verifier.check_code("never@example.com", "123456")

    def test_check_after_verified_is_invalid_auth(self, verifier):
        attempt = verifier.issue_code(EMAIL)
        verifier.check_code(EMAIL, attempt.code)
        with pytest.raises(InvalidAuth):
            verifier.check_code(EMAIL, attempt.code)


class TestReissue:
    def test_two_minutes_then_four_minutes(self, verifier, clock):
        """Verified at T0+2min; after a reissue, a check 4 minutes on is expired."""
        first = verifier.issue_code(EMAIL)
        clock.advance(minutes=2)
        assert verifier.check_code(EMAIL, first.code) is True

        second = verifier.issue_code(EMAIL)
        assert verifier.status(EMAIL) is VerificationStatus.UNVERIFIED
        clock.advance(minutes=4)
        with pytest.raises(ExpiredAuth):
            verifier.check_code(EMAIL, second.code)
        assert verifier.status(EMAIL) is VerificationStatus.EXPIRED

    def test_old_code_is_superseded(self, verification_store, clock):
        codes = iter(["111111", "222222"])
        verifier = VerificationService(verification_store, clock=clock, code_factory=lambda length: next(codes))
        verifier.issue_code(EMAIL)
        verifier.issue_code(EMAIL)
        with pytest.raises(InvalidVerifCode):
            verifier.check_code(EMAIL, "111111")
        assert verifier.check_code(EMAIL, "222222") is True

    def test_late_update_does_not_touch_newer_attempt(self, verifier, verification_store, clock):
        """A status change keyed to an old attempt is a no-op after a reissue."""
        old = verifier.issue_code(EMAIL)
        clock.advance(seconds=10)
        verifier.issue_code(EMAIL)
        assert verification_store.update_status(old, VerificationStatus.EXPIRED) is False
        assert verification_store.find_by_email(EMAIL).status is VerificationStatus.UNVERIFIED


class TestStatus:
    def test_never_issued(self, verifier):
        assert verifier.status(EMAIL) is None

    def test_lazy_expiry_is_persisted(self, verifier, verification_store, clock):
        verifier.issue_code(EMAIL)
        clock.advance(minutes=10)
        assert verifier.status(EMAIL) is VerificationStatus.EXPIRED
        assert verification_store.find_by_email(EMAIL).status is VerificationStatus.EXPIRED

    def test_verified_stays_verified_after_window(self, verifier, clock):
        attempt = verifier.issue_code(EMAIL)
        verifier.check_code(EMAIL, attempt.code)
        clock.advance(hours=1)
        assert verifier.status(EMAIL) is VerificationStatus.VERIFIED
        assert verifier.is_verified(EMAIL)


class TestHousekeeping:
    def test_discard_forgets_attempt(self, verifier):
        attempt = verifier.issue_code(EMAIL)
        verifier.check_code(EMAIL, attempt.code)
        assert verifier.discard(EMAIL) is True
        assert verifier.status(EMAIL) is None
        assert not verifier.is_verified(EMAIL)

    def test_purge_stale_removes_only_old_attempts(self, verifier, clock):
        verifier.issue_code("old@example.com")
        clock.advance(hours=25)
        verifier.issue_code("new@example.com")
        assert verifier.purge_stale(timedelta(hours=24)) == 1
        assert verifier.status("old@example.com") is None
        assert verifier.status("new@example.com") is VerificationStatus.UNVERIFIED

    def test_custom_window(self, verification_store, clock):
        short = VerificationService(verification_store, window=timedelta(seconds=30), clock=clock)
        attempt = short.issue_code(EMAIL)
        clock.advance(seconds=31)
        with pytest.raises(ExpiredAuth):
            short.check_code(EMAIL, attempt.code)

    def test_reissue_during_check_fails_the_stale_code(self, verifier, verification_store, clock, monkeypatch):
        """A reissue between lookup and write leaves the newer attempt pending."""
        old = verifier.issue_code(EMAIL)
        original_update = verification_store.update_status
        newer = []

        def reissue_then_update(attempt, new_status):
            if not newer:
                clock.advance(seconds=5)
                newer.append(verifier.issue_code(EMAIL))
            return original_update(attempt, new_status)

        monkeypatch.setattr(verification_store, "update_status", reissue_then_update)
        with pytest.raises(InvalidAuth, match="superseded"):
            verifier.check_code(EMAIL, old.code)

        stored = verification_store.find_by_email(EMAIL)
        assert stored.status is VerificationStatus.UNVERIFIED
        assert stored.code == newer[0].code
        assert verifier.is_verified(EMAIL) is False
