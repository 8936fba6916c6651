"""
auth/errors.py -- Typed failures raised by the authentication core.

Every failure the core can report has an ErrorKind. The kind travels to the
HTTP layer unchanged and becomes the "code" field of the error envelope, so a
client can always tell NotCompleteAuth from DuplicateMember without parsing
messages. Nothing in auth/ catches and retries these: every failure is
terminal for the request that raised it.

StorageError is the one opaque kind. It wraps whatever the database driver
raised; the API layer reports it as a generic 500.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    DUPLICATE_MEMBER = "duplicate_member"
    NOT_FOUND_USER = "not_found_user"
    NOT_FOUND = "not_found"
    NOT_COMPLETE_AUTH = "not_complete_auth"
    INVALID_AUTH = "invalid_auth"
    EXPIRED_AUTH = "expired_auth"
    INVALID_VERIF_CODE = "invalid_verif_code"
    EXPIRED_REFRESH_TOKEN = "expired_refresh_token"
    EXPIRED_TOKEN = "expired_token"
    MALFORMED_TOKEN = "malformed_token"
    SAME_PASSWORD = "same_password"
    DIFFERENT_PASSWORD = "different_password"
    SAME_NICKNAME = "same_nickname"
    OAUTH_FAILED = "oauth_failed"
    STORAGE_ERROR = "storage_error"


class AuthError(Exception):
    """Base class for every domain failure. Subclasses pin the kind and default message."""

    kind: ErrorKind = ErrorKind.NOT_FOUND
    default_message: str = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class DuplicateMember(AuthError):
    kind = ErrorKind.DUPLICATE_MEMBER
    default_message = "A member with that email already exists."


class NotFoundUser(AuthError):
    kind = ErrorKind.NOT_FOUND_USER
    default_message = "No member matches those credentials."


class NotFound(AuthError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Member not found."


class NotCompleteAuth(AuthError):
    kind = ErrorKind.NOT_COMPLETE_AUTH
    default_message = "Email verification has not been completed."


class InvalidAuth(AuthError):
    kind = ErrorKind.INVALID_AUTH
    default_message = "No pending verification request for this email."


class ExpiredAuth(AuthError):
    kind = ErrorKind.EXPIRED_AUTH
    default_message = "The verification code has expired. Request a new one."


class InvalidVerifCode(AuthError):
    kind = ErrorKind.INVALID_VERIF_CODE
    default_message = "The verification code does not match."


class ExpiredRefreshToken(AuthError):
    kind = ErrorKind.EXPIRED_REFRESH_TOKEN
    default_message = "The refresh token is expired or no longer valid. Log in again."


class ExpiredToken(AuthError):
    kind = ErrorKind.EXPIRED_TOKEN
    default_message = "The token has expired."


class MalformedToken(AuthError):
    kind = ErrorKind.MALFORMED_TOKEN
    default_message = "The token is invalid."


class SamePassword(AuthError):
    kind = ErrorKind.SAME_PASSWORD
    default_message = "The new password must differ from the current one."


class DifferentPassword(AuthError):
    kind = ErrorKind.DIFFERENT_PASSWORD
    default_message = "The password does not match."


class SameNickname(AuthError):
    kind = ErrorKind.SAME_NICKNAME
    default_message = "The new nickname is the same as the current one."


class OAuthFailed(AuthError):
    kind = ErrorKind.OAUTH_FAILED
    default_message = "OAuth authentication failed."


class StorageError(AuthError):
    kind = ErrorKind.STORAGE_ERROR
    default_message = "A storage error occurred."
