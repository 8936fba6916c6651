"""
auth/passwords.py -- bcrypt storage encoding for member passwords.

The core compares credentials for exact equality; it never decides what a good
password is. This module only controls how the credential is stored: the
MemberStore hashes on write and checks on read, so a leaked database does not
leak passwords.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.
"""

from __future__ import annotations

import bcrypt

_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads 72 bytes and current releases refuse longer input, so the
    encoded password is cut at 72 bytes here and in verify_password().
    """
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A None hash (OAuth-only member) never matches. A corrupt hash is treated
    as a mismatch rather than an error.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load. find_by_email_and_password() always runs bcrypt,
# even for unknown emails, so response time does not reveal which emails exist.
DUMMY_HASH: str = hash_password("membergate_timing_dummy")
