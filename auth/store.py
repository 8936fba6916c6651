"""
auth/store.py -- SQLAlchemy Core persistence layer for members and verification attempts.

Pattern: Repository + Data Mapper.
MemberStore and VerificationStore are the repositories; _row_to_member /
_row_to_attempt are the mappers. Service and route code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Passwords are hashed with bcrypt on every write. find_by_email_and_password()
  always runs bcrypt, against a dummy hash when the email is unknown [C1].

Atomicity:
  Every read-modify-write runs inside engine.begin(), one transaction per call.
  swap_refresh_token() is a compare-and-swap: UPDATE ... WHERE refresh_token
  equals the value the caller validated. Two racing refreshes for one member
  cannot both win.

  VerificationStore.save() upserts by email. Concurrent issuances for the same
  email are last-write-wins; only the latest attempt is ever checkable.

Errors:
  Any SQLAlchemyError is re-raised as auth.errors.StorageError. The core treats
  it as fatal for the request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateMember, StorageError
from auth.models import Member, VerificationAttempt, VerificationStatus
from auth.passwords import DUMMY_HASH, hash_password, verify_password

logger = logging.getLogger("membergate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_members = Table(
    "members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password", Text),  # bcrypt hash; NULL for OAuth-only members
    Column("refresh_token", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("platform", String(30), nullable=False, server_default="local"),
    Column("oauth_subject", Text),
    Column("nickname", String(100)),
    Column("user_name", String(100)),
    Column("birth", String(10)),
    Column("gender", String(10)),
    Column("phone", String(30)),
    Column("address", Text),
    Column("area_intrs", Text),
    Column("created_at", String(32), nullable=False),
)

_email_verifications = Table(
    "email_verifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # one live attempt per email
    Column("code", String(12), nullable=False),
    Column("status", String(16), nullable=False),
    Column("issued_at", String(32), nullable=False),  # ISO 8601, UTC
)

# Columns a caller may change through MemberStore.update(). id, email and
# password are excluded: email is the identity key, password goes through
# update_password() so it is always hashed.
_UPDATABLE_MEMBER_FIELDS = frozenset(
    {
        "refresh_token",
        "is_active",
        "platform",
        "oauth_subject",
        "nickname",
        "user_name",
        "birth",
        "gender",
        "phone",
        "address",
        "area_intrs",
    }
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str, timeout: float) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Re-raise driver failures as StorageError, keeping the original as __cause__."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Storage failure during %s", operation)
        raise StorageError() from exc


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_utc_iso(value: datetime) -> str:
    # Fixed-width UTC form keeps lexicographic order equal to time order.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Member repository
# ---------------------------------------------------------------------------


class MemberStore:
    """Repository for Member records (the Credential Store).

    Usage:
        store = MemberStore("sqlite:///members.db")
        member_id = store.create(Member(email="a@x.com"), password="secret")
        member = store.find_by_email_and_password("a@x.com", "secret")
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        self.engine: Engine = _make_engine(db_url, timeout)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> Member | None:
        """Look up a member by exact email. Returns None if not found."""
        with _storage_errors("find_by_email"), self.engine.connect() as conn:
            row = conn.execute(_members.select().where(_members.c.email == email)).fetchone()
        return _row_to_member(row) if row is not None else None

    def find_by_id(self, member_id: int) -> Member | None:
        """Look up a member by primary key. Returns None if not found."""
        with _storage_errors("find_by_id"), self.engine.connect() as conn:
            row = conn.execute(_members.select().where(_members.c.id == member_id)).fetchone()
        return _row_to_member(row) if row is not None else None

    def find_by_email_and_password(self, email: str, password: str) -> Member | None:
        """Return the member whose email and password both match, else None.

        Always runs bcrypt whether or not the email exists [C1]:
        - Unknown email: bcrypt runs against DUMMY_HASH (same cost as a real check)
        - Wrong password: bcrypt runs against the real hash (same cost)
        """
        member = self.find_by_email(email)
        if member is None or member.password is None:
            verify_password(password, DUMMY_HASH)
            return None
        if not verify_password(password, member.password):
            return None
        return member

    def exists(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, member: Member, password: str | None = None) -> int:
        """Insert a new member and return its assigned ID.

        password is plaintext and is hashed here; member.password is ignored.
        Raises DuplicateMember if a concurrent request already inserted the email.
        """
        values = {
            "email": member.email,
            "password": hash_password(password) if password is not None else None,
            "refresh_token": member.refresh_token,
            "is_active": 1 if member.is_active else 0,
            "platform": member.platform,
            "oauth_subject": member.oauth_subject,
            "nickname": member.nickname,
            "user_name": member.user_name,
            "birth": member.birth,
            "gender": member.gender,
            "phone": member.phone,
            "address": member.address,
            "area_intrs": member.area_intrs,
            "created_at": _now_iso(),
        }
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_members.insert().values(**values))
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateMember() from exc
        except SQLAlchemyError as exc:
            logger.exception("Storage failure during create")
            raise StorageError() from exc

    def update(self, member_id: int, **fields) -> bool:
        """Update mutable fields on an existing member.

        Only keys in _UPDATABLE_MEMBER_FIELDS are accepted. Unknown keys raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if member_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_MEMBER_FIELDS
        if unknown:
            raise ValueError(f"Unknown member fields: {sorted(unknown)!r}")
        if not fields:
            return False
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with _storage_errors("update"), self.engine.begin() as conn:
            result = conn.execute(_members.update().where(_members.c.id == member_id).values(**fields))
        return result.rowcount > 0

    def update_password(self, member_id: int, password: str) -> bool:
        """Hash and store a new password. Returns False if member_id was not found."""
        hashed = hash_password(password)
        with _storage_errors("update_password"), self.engine.begin() as conn:
            result = conn.execute(_members.update().where(_members.c.id == member_id).values(password=hashed))
        return result.rowcount > 0

    def set_refresh_token(self, member_id: int, token: str) -> bool:
        """Unconditionally overwrite the stored refresh token (login path)."""
        return self.update(member_id, refresh_token=token)

    def swap_refresh_token(self, member_id: int, expected: str | None, new: str) -> bool:
        """Replace the stored refresh token only if it still equals expected.

        Returns False when another request replaced the token first. The caller
        treats that as a superseded token.
        """
        if expected is None:
            condition = _members.c.refresh_token.is_(None)
        else:
            condition = _members.c.refresh_token == expected
        with _storage_errors("swap_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(
                _members.update().where((_members.c.id == member_id) & condition).values(refresh_token=new)
            )
        return result.rowcount > 0

    def delete(self, member_id: int) -> bool:
        """Permanently delete a member record. Returns True if deleted, False if not found."""
        with _storage_errors("delete"), self.engine.begin() as conn:
            result = conn.execute(_members.delete().where(_members.c.id == member_id))
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_members.select().limit(1)).fetchall()
        except SQLAlchemyError:
            logger.warning("Member store ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Verification repository
# ---------------------------------------------------------------------------


class VerificationStore:
    """Repository for VerificationAttempt records, keyed by email.

    May share an Engine with MemberStore (pass engine=) so both tables live in
    one database, or open its own from db_url.
    """

    def __init__(self, db_url: str | None = None, timeout: float = 5.0, engine: Engine | None = None) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("VerificationStore needs either db_url or engine.")
            engine = _make_engine(db_url, timeout)
            self._owns_engine = True
        else:
            _metadata.create_all(engine)
            self._owns_engine = False
        self.engine: Engine = engine

    def find_by_email(self, email: str) -> VerificationAttempt | None:
        """Return the latest attempt for email, whatever its status."""
        with _storage_errors("find_by_email"), self.engine.connect() as conn:
            row = conn.execute(
                _email_verifications.select().where(_email_verifications.c.email == email)
            ).fetchone()
        return _row_to_attempt(row) if row is not None else None

    def find_by_email_and_status(self, email: str, status: VerificationStatus) -> VerificationAttempt | None:
        """Return the attempt for email only if it is currently in the given status."""
        with _storage_errors("find_by_email_and_status"), self.engine.connect() as conn:
            row = conn.execute(
                _email_verifications.select().where(
                    (_email_verifications.c.email == email) & (_email_verifications.c.status == status.value)
                )
            ).fetchone()
        return _row_to_attempt(row) if row is not None else None

    def save(self, attempt: VerificationAttempt) -> None:
        """Insert or overwrite the attempt for attempt.email (upsert by email).

        UPDATE first, INSERT when nothing matched, both in one transaction.
        """
        values = {
            "code": attempt.code,
            "status": attempt.status.value,
            "issued_at": _to_utc_iso(attempt.issued_at),
        }
        with _storage_errors("save"), self.engine.begin() as conn:
            result = conn.execute(
                _email_verifications.update().where(_email_verifications.c.email == attempt.email).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(_email_verifications.insert().values(email=attempt.email, **values))

    def update_status(self, attempt: VerificationAttempt, new: VerificationStatus) -> bool:
        """Move attempt to new, only if the stored row is still that exact attempt.

        Matches on email, current status and issued_at. If a fresh issue_code()
        replaced the attempt in the meantime, nothing is written and False is
        returned, so a late check can never change the newer attempt's state.
        """
        with _storage_errors("update_status"), self.engine.begin() as conn:
            result = conn.execute(
                _email_verifications.update()
                .where(
                    (_email_verifications.c.email == attempt.email)
                    & (_email_verifications.c.status == attempt.status.value)
                    & (_email_verifications.c.issued_at == _to_utc_iso(attempt.issued_at))
                )
                .values(status=new.value)
            )
        return result.rowcount > 0

    def delete_by_email(self, email: str) -> bool:
        with _storage_errors("delete_by_email"), self.engine.begin() as conn:
            result = conn.execute(_email_verifications.delete().where(_email_verifications.c.email == email))
        return result.rowcount > 0

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete every attempt issued before cutoff. Returns number of rows removed.

        ISO 8601 strings in UTC sort lexicographically in time order, so a
        string comparison is a time comparison here.
        """
        with _storage_errors("purge_older_than"), self.engine.begin() as conn:
            result = conn.execute(
                _email_verifications.delete().where(_email_verifications.c.issued_at < _to_utc_iso(cutoff))
            )
        return result.rowcount

    def close(self) -> None:
        if self._owns_engine:
            self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_member(row) -> Member:
    return Member(
        id=row.id,
        email=row.email,
        password=row.password,
        refresh_token=row.refresh_token,
        is_active=bool(row.is_active),
        platform=row.platform,
        oauth_subject=row.oauth_subject,
        nickname=row.nickname,
        user_name=row.user_name,
        birth=row.birth,
        gender=row.gender,
        phone=row.phone,
        address=row.address,
        area_intrs=row.area_intrs,
        created_at=row.created_at,
    )


def _row_to_attempt(row) -> VerificationAttempt:
    issued_at = datetime.fromisoformat(row.issued_at)
    if issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)
    return VerificationAttempt(
        id=row.id,
        email=row.email,
        code=row.code,
        status=VerificationStatus(row.status),
        issued_at=issued_at,
    )
