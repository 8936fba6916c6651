"""
auth/verification.py -- Email-verification state machine.

One time-boxed attempt per email:

    issue_code()            check_code() in window, code matches
        |                              |
        v                              v
    UNVERIFIED ------------------> VERIFIED   (terminal; consumed by registration)
        |
        | check_code() or status() after the window
        v
    EXPIRED                                   (terminal until a new issue_code())

"Invalid" is an outcome, not a state: check_code() on an email with no
UNVERIFIED attempt raises InvalidAuth and changes nothing.

Expiry is two-phase. check_code() first decides the outcome, then commits any
status change through the store, and only then raises. The EXPIRED write is
already committed when ExpiredAuth reaches the caller, so a failing request
never rolls it back and later checks observe EXPIRED directly.

The sender of the code is not this module's concern: issue_code() returns the
attempt and AuthService hands the code to a CodeSender.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.errors import AuthError, ExpiredAuth, InvalidAuth, InvalidVerifCode
from auth.models import VerificationAttempt, VerificationStatus
from auth.store import VerificationStore
from auth.tokens import utc_now

logger = logging.getLogger("membergate.auth.verification")

DEFAULT_WINDOW = timedelta(minutes=3)


def generate_code(length: int = 6) -> str:
    """Return a numeric code of the given length from the secrets CSPRNG."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


@dataclass(frozen=True)
class _Decision:
    """Outcome of evaluating a submitted code, before anything is written."""

    new_status: VerificationStatus | None
    error: AuthError | None


class VerificationService:
    """Issue and check email-verification codes against a VerificationStore.

    Usage:
        verifier = VerificationService(VerificationStore(engine=engine))
        attempt = verifier.issue_code("a@x.com")
        verifier.check_code("a@x.com", attempt.code)   # True, or raises
        verifier.is_verified("a@x.com")                # True
    """

    def __init__(
        self,
        store: VerificationStore,
        window: timedelta = DEFAULT_WINDOW,
        code_length: int = 6,
        clock: Callable[[], datetime] = utc_now,
        code_factory: Callable[[int], str] = generate_code,
    ) -> None:
        self._store = store
        self._window = window
        self._code_length = code_length
        self._clock = clock
        self._code_factory = code_factory

    @property
    def window(self) -> timedelta:
        return self._window

    def issue_code(self, email: str) -> VerificationAttempt:
        """Create or overwrite the attempt for email in UNVERIFIED with a fresh code.

        Any earlier attempt for the email, whatever its status, is superseded.
        Not idempotent: callers must not retry this automatically.
        """
        attempt = VerificationAttempt(
            email=email,
            code=self._code_factory(self._code_length),
            issued_at=self._clock(),
            status=VerificationStatus.UNVERIFIED,
        )
        self._store.save(attempt)
        logger.info("Verification code issued for %s", email)
        return attempt

    def check_code(self, email: str, submitted_code: str) -> bool:
        """Match a submitted code against the pending attempt for email.

        Returns True and persists VERIFIED on success.

        Raises:
            InvalidAuth:      no UNVERIFIED attempt exists (never requested,
                              already verified, or already expired).
            ExpiredAuth:      the window has elapsed. EXPIRED is persisted
                              before this is raised.
            InvalidVerifCode: the code does not match. Nothing is written.

        A reissue that lands between the lookup and the write replaces the
        attempt; the stale attempt then fails with InvalidAuth and the new one
        is left untouched.
        """
        attempt = self._store.find_by_email_and_status(email, VerificationStatus.UNVERIFIED)
        if attempt is None:
            raise InvalidAuth()

        decision = self._decide(attempt, submitted_code)
        if decision.new_status is not None:
            if not self._store.update_status(attempt, decision.new_status):
                logger.info("Verification for %s was reissued during the check", email)
                raise InvalidAuth("The verification request was superseded by a newer code.")
            logger.info("Verification for %s moved to %s", email, decision.new_status.value)
        if decision.error is not None:
            raise decision.error
        return True

    def is_verified(self, email: str) -> bool:
        """True iff the latest attempt for email is VERIFIED. Never mutates."""
        attempt = self._store.find_by_email(email)
        return attempt is not None and attempt.status is VerificationStatus.VERIFIED

    def status(self, email: str) -> VerificationStatus | None:
        """Return the current status for email, or None if nothing was ever issued.

        An UNVERIFIED attempt whose window has elapsed is moved to EXPIRED here,
        so a status poll and a late check_code() agree.
        """
        attempt = self._store.find_by_email(email)
        if attempt is None:
            return None
        if attempt.status is VerificationStatus.UNVERIFIED and self._is_expired(attempt):
            if self._store.update_status(attempt, VerificationStatus.EXPIRED):
                return VerificationStatus.EXPIRED
            # Reissued since the read; report the newer attempt.
            return self.status(email)
        return attempt.status

    def discard(self, email: str) -> bool:
        """Forget any attempt for email. Used on withdrawal so re-registration must verify again."""
        return self._store.delete_by_email(email)

    def purge_stale(self, max_age: timedelta) -> int:
        """Delete attempts issued more than max_age ago. Returns number of rows removed."""
        return self._store.purge_older_than(self._clock() - max_age)

    def _is_expired(self, attempt: VerificationAttempt) -> bool:
        # Strictly after: a check at exactly issued_at + window still succeeds.
        return self._clock() > attempt.issued_at + self._window

    def _decide(self, attempt: VerificationAttempt, submitted_code: str) -> _Decision:
        if self._is_expired(attempt):
            return _Decision(VerificationStatus.EXPIRED, ExpiredAuth())
        if not secrets.compare_digest(submitted_code.encode("utf-8"), attempt.code.encode("utf-8")):
            return _Decision(None, InvalidVerifCode())
        return _Decision(VerificationStatus.VERIFIED, None)
