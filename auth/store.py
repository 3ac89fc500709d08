"""
auth/store.py -- CredentialStore contract and its two implementations.

Pattern: Repository + Data Mapper. CredentialStore is the capability set the
credential core consumes; SQLCredentialStore is the production repository
(SQLAlchemy Core), InMemoryCredentialStore the deterministic test double.
_row_to_user is the mapper. Flows never touch SQL directly.

Atomicity:
  Token consumption is never "read, check, then write". The consuming write
  itself carries the guard -- WHERE verification_token = :token, or
  WHERE reset_token = :token AND reset_token_expires_at > :now -- and the
  caller learns whether it won from the affected row count. Two concurrent
  callers presenting the same token: exactly one UPDATE matches.

  update_user() is a full-record compare-and-swap on `version`. A stale read
  returns False instead of silently overwriting a concurrent write (e.g. a
  verification that landed between the read and the write).

  No in-process lock is held across a database round trip. The in-memory
  double uses a lock only because its "database" is a dict.

Errors:
  Lookups raise NotFound. create_user raises Conflict on a duplicate email.
  Any other SQLAlchemy failure becomes PersistenceError. Every method checks
  the caller's Deadline before doing I/O and raises Cancelled once it passed.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps are stored as fixed-width ISO 8601 UTC strings
(YYYY-MM-DDTHH:MM:SS.ffffffZ) so string comparison is chronological on every
backend -- the reset-token expiry guard relies on that.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import User
from core.deadline import Deadline, check
from core.errors import Conflict, NotFound, PersistenceError

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # case-sensitive
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False),
    Column("is_verified", Boolean, nullable=False, default=False),
    Column("verification_token", String(64), index=True),
    Column("reset_token", String(64), index=True),
    Column("reset_token_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, default=1),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _ISO_FORMAT).replace(tzinfo=timezone.utc)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    """Persistence capabilities consumed by the credential core."""

    def create_user(self, user: User, deadline: Deadline | None = None) -> User: ...

    def find_by_email(self, email: str, deadline: Deadline | None = None) -> User: ...

    def find_by_id(self, user_id: int, deadline: Deadline | None = None) -> User: ...

    def find_by_verification_token(self, token: str, deadline: Deadline | None = None) -> User: ...

    def find_by_reset_token(self, token: str, deadline: Deadline | None = None) -> User: ...

    def update_user(self, user: User, deadline: Deadline | None = None) -> bool: ...

    def update_password_hash(
        self,
        user_id: int,
        hashed_password: str,
        *,
        reset_token: str | None = None,
        now: datetime | None = None,
        expected_hash: str | None = None,
        mark_verified: bool = False,
        deadline: Deadline | None = None,
    ) -> bool: ...

    def update_verification_status(
        self,
        user_id: int,
        is_verified: bool,
        *,
        verification_token: str | None = None,
        deadline: Deadline | None = None,
    ) -> bool: ...

    def purge_expired_reset_tokens(self, now: datetime, deadline: Deadline | None = None) -> int: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# SQLAlchemy Core repository
# ---------------------------------------------------------------------------


class SQLCredentialStore:
    """Repository for User records on any SQLAlchemy-supported database.

    Usage:
        store = SQLCredentialStore(settings.database_url)
        user = store.create_user(User(email="a@x.com", hashed_password=h, role="client"))
        store.find_by_email("a@x.com")
        store.close()
    """

    def __init__(
        self,
        db_url: str,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._clock = clock
        self._log = logger or logging.getLogger("keywarden.auth.store")

    @contextmanager
    def _connect(self, deadline: Deadline | None) -> Iterator[Connection]:
        """Yield a connection; map driver failures onto the core's error kinds."""
        check(deadline)
        try:
            with self.engine.connect() as conn:
                yield conn
        except IntegrityError as exc:
            raise Conflict() from exc
        except SQLAlchemyError as exc:
            self._log.error("Credential store failure: %s", type(exc).__name__)
            raise PersistenceError() from exc

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create_user(self, user: User, deadline: Deadline | None = None) -> User:
        """Insert a new user and return it with id, timestamps and version set.

        Raises Conflict if the email already exists. The UNIQUE constraint is
        the arbiter, so two concurrent registrations cannot both succeed.
        """
        now = self._clock()
        with self._connect(deadline) as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_verified=user.is_verified,
                    verification_token=user.verification_token,
                    reset_token=user.reset_token,
                    reset_token_expires_at=_to_iso(user.reset_token_expires_at),
                    created_at=_to_iso(now),
                    updated_at=_to_iso(now),
                    version=1,
                )
            )
            conn.commit()
            user_id = result.inserted_primary_key[0]
        return replace(user, id=user_id, created_at=now, updated_at=now, version=1)

    def find_by_email(self, email: str, deadline: Deadline | None = None) -> User:
        """Exact, case-sensitive match."""
        return self._find_one(_users.c.email == email, deadline)

    def find_by_id(self, user_id: int, deadline: Deadline | None = None) -> User:
        return self._find_one(_users.c.id == user_id, deadline)

    def find_by_verification_token(self, token: str, deadline: Deadline | None = None) -> User:
        if not token:
            raise NotFound()
        return self._find_one(_users.c.verification_token == token, deadline)

    def find_by_reset_token(self, token: str, deadline: Deadline | None = None) -> User:
        """Return the holder of a reset token, expired or not.

        Expiry is the caller's decision: PasswordResetFlow reports an expired
        token as ExpiredToken rather than InvalidToken.
        """
        if not token:
            raise NotFound()
        return self._find_one(_users.c.reset_token == token, deadline)

    def _find_one(self, where, deadline: Deadline | None) -> User:
        with self._connect(deadline) as conn:
            row = conn.execute(_users.select().where(where)).fetchone()
        if row is None:
            raise NotFound()
        return _row_to_user(row)

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    def update_user(self, user: User, deadline: Deadline | None = None) -> bool:
        """Write every mutable field if user.version is still current.

        email and role are immutable and never written here. Returns False
        when the record changed since it was read (or no longer exists).
        """
        with self._connect(deadline) as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user.id) & (_users.c.version == user.version))
                .values(
                    hashed_password=user.hashed_password,
                    is_verified=user.is_verified,
                    verification_token=user.verification_token,
                    reset_token=user.reset_token,
                    reset_token_expires_at=_to_iso(user.reset_token_expires_at),
                    updated_at=_to_iso(self._clock()),
                    version=_users.c.version + 1,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_password_hash(
        self,
        user_id: int,
        hashed_password: str,
        *,
        reset_token: str | None = None,
        now: datetime | None = None,
        expected_hash: str | None = None,
        mark_verified: bool = False,
        deadline: Deadline | None = None,
    ) -> bool:
        """Replace the password hash.

        With reset_token set, the write is the token's consumption: it only
        matches while that token is still stored and unexpired at `now`, and
        it clears both reset fields. Without it (cost-factor upgrade on login)
        pending reset state is left alone.

        With expected_hash set, the write only matches while the stored hash
        is still that value, so a rehash computed from a stale read cannot
        overwrite a password changed in the meantime.

        mark_verified additionally sets is_verified and clears the
        verification token in the same statement.
        """
        where = _users.c.id == user_id
        if expected_hash is not None:
            where = where & (_users.c.hashed_password == expected_hash)
        values: dict = {
            "hashed_password": hashed_password,
            "updated_at": _to_iso(self._clock()),
            "version": _users.c.version + 1,
        }
        if reset_token is not None:
            cutoff = _to_iso(now or self._clock())
            where = where & (_users.c.reset_token == reset_token) & (_users.c.reset_token_expires_at > cutoff)
            values["reset_token"] = None
            values["reset_token_expires_at"] = None
        if mark_verified:
            values["is_verified"] = True
            values["verification_token"] = None
        with self._connect(deadline) as conn:
            result = conn.execute(_users.update().where(where).values(**values))
            conn.commit()
        return result.rowcount > 0

    def update_verification_status(
        self,
        user_id: int,
        is_verified: bool,
        *,
        verification_token: str | None = None,
        deadline: Deadline | None = None,
    ) -> bool:
        """Set is_verified and clear the verification token.

        With verification_token set, the write only matches while that token
        is still the stored one -- this is the single-use consumption.
        """
        where = _users.c.id == user_id
        if verification_token is not None:
            where = where & (_users.c.verification_token == verification_token)
        with self._connect(deadline) as conn:
            result = conn.execute(
                _users.update()
                .where(where)
                .values(
                    is_verified=is_verified,
                    verification_token=None,
                    updated_at=_to_iso(self._clock()),
                    version=_users.c.version + 1,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def purge_expired_reset_tokens(self, now: datetime, deadline: Deadline | None = None) -> int:
        """Clear reset tokens whose expiry is at or before `now`. Returns rows touched."""
        with self._connect(deadline) as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.reset_token.is_not(None) & (_users.c.reset_token_expires_at <= _to_iso(now)))
                .values(
                    reset_token=None,
                    reset_token_expires_at=None,
                    updated_at=_to_iso(self._clock()),
                    version=_users.c.version + 1,
                )
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# In-memory test double
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    """Deterministic dict-backed CredentialStore.

    Same contract and same conditional-write semantics as SQLCredentialStore.
    Records are copied on the way in and out, so callers can never mutate
    stored state without going through a write method.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._users: dict[int, User] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def create_user(self, user: User, deadline: Deadline | None = None) -> User:
        check(deadline)
        with self._lock:
            if any(u.email == user.email for u in self._users.values()):
                raise Conflict()
            now = self._clock()
            stored = replace(user, id=self._next_id, created_at=now, updated_at=now, version=1)
            self._users[stored.id] = stored
            self._next_id += 1
            return replace(stored)

    def find_by_email(self, email: str, deadline: Deadline | None = None) -> User:
        return self._find(lambda u: u.email == email, deadline)

    def find_by_id(self, user_id: int, deadline: Deadline | None = None) -> User:
        return self._find(lambda u: u.id == user_id, deadline)

    def find_by_verification_token(self, token: str, deadline: Deadline | None = None) -> User:
        return self._find(lambda u: bool(token) and u.verification_token == token, deadline)

    def find_by_reset_token(self, token: str, deadline: Deadline | None = None) -> User:
        return self._find(lambda u: bool(token) and u.reset_token == token, deadline)

    def _find(self, predicate: Callable[[User], bool], deadline: Deadline | None) -> User:
        check(deadline)
        with self._lock:
            for user in self._users.values():
                if predicate(user):
                    return replace(user)
        raise NotFound()

    def update_user(self, user: User, deadline: Deadline | None = None) -> bool:
        check(deadline)
        with self._lock:
            current = self._users.get(user.id)
            if current is None or current.version != user.version:
                return False
            self._users[user.id] = replace(
                user,
                email=current.email,
                role=current.role,
                created_at=current.created_at,
                updated_at=self._clock(),
                version=current.version + 1,
            )
            return True

    def update_password_hash(
        self,
        user_id: int,
        hashed_password: str,
        *,
        reset_token: str | None = None,
        now: datetime | None = None,
        expected_hash: str | None = None,
        mark_verified: bool = False,
        deadline: Deadline | None = None,
    ) -> bool:
        check(deadline)
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                return False
            if expected_hash is not None and current.hashed_password != expected_hash:
                return False
            changes: dict = {"hashed_password": hashed_password}
            if reset_token is not None:
                if current.reset_token != reset_token or not current.reset_token_active(now or self._clock()):
                    return False
                changes.update(reset_token=None, reset_token_expires_at=None)
            if mark_verified:
                changes.update(is_verified=True, verification_token=None)
            self._write(current, **changes)
            return True

    def update_verification_status(
        self,
        user_id: int,
        is_verified: bool,
        *,
        verification_token: str | None = None,
        deadline: Deadline | None = None,
    ) -> bool:
        check(deadline)
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                return False
            if verification_token is not None and current.verification_token != verification_token:
                return False
            self._write(current, is_verified=is_verified, verification_token=None)
            return True

    def purge_expired_reset_tokens(self, now: datetime, deadline: Deadline | None = None) -> int:
        check(deadline)
        with self._lock:
            expired = [
                u
                for u in self._users.values()
                if u.reset_token is not None and u.reset_token_expires_at is not None and u.reset_token_expires_at <= now
            ]
            for user in expired:
                self._write(user, reset_token=None, reset_token_expires_at=None)
            return len(expired)

    def _write(self, current: User, **changes) -> None:
        # Caller holds self._lock.
        self._users[current.id] = replace(current, updated_at=self._clock(), version=current.version + 1, **changes)

    def close(self) -> None:
        self._users.clear()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        is_verified=bool(row.is_verified),
        verification_token=row.verification_token,
        reset_token=row.reset_token,
        reset_token_expires_at=_from_iso(row.reset_token_expires_at),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        version=row.version,
    )
