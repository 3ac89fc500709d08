"""
auth/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and flows do the work.

User is the aggregate root and is owned by the CredentialStore. Everything
that leaves the core uses PublicUser, which has no password hash and no
tokens -- the hash must never reach an external representation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

# Closed role set. Roles are fixed at registration.
ROLES: tuple[str, ...] = ("client", "sales_rep", "admin")


@dataclass
class User:
    """A registered account and its credential lifecycle state.

    verification_token is present only while the account is unverified and a
    confirmation is pending. reset_token / reset_token_expires_at are set
    together by a reset request and cleared together when the token is
    consumed or purged. An expired reset token is unusable even before the
    purge clears it.

    version is the optimistic-concurrency counter: the store bumps it on every
    write and update_user() only succeeds if the caller read the latest one.
    """

    email: str
    hashed_password: str
    role: str  # "client", "sales_rep", "admin"
    id: int | None = None
    is_verified: bool = False
    verification_token: str | None = None
    reset_token: str | None = None
    reset_token_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    def reset_token_active(self, now: datetime) -> bool:
        """True if a reset token is set and has not yet reached its expiry."""
        return (
            self.reset_token is not None
            and self.reset_token_expires_at is not None
            and now < self.reset_token_expires_at
        )

    def public(self) -> PublicUser:
        return PublicUser(id=self.id, email=self.email, role=self.role)


@dataclass(frozen=True)
class PublicUser:
    """The identity of a user as seen by callers of the core."""

    id: int | None
    email: str
    role: str


@dataclass(frozen=True)
class Registration:
    """Result of AuthenticationService.register().

    verification_token is returned so the caller can build its own link if it
    does not use the service's dispatcher; it is never logged.
    """

    user: PublicUser
    verification_token: str


@dataclass(frozen=True)
class SessionClaims:
    """Claims carried by a verified session token."""

    user_id: int
    role: str
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    """A freshly issued session token and the identity it asserts."""

    access_token: str
    expires_in: int  # seconds
    user: PublicUser
