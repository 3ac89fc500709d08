"""
auth/hashing.py -- SecretHasher: bcrypt password hashing on a worker pool.

Security design decisions:
  bcrypt, used directly (no passlib wrapper). Its log2 cost factor is the
       tuning knob: DEFAULT_ROUNDS is the named default, Settings.hash_rounds
       overrides it per deployment. needs_rehash() lets the login path upgrade
       stored hashes after the cost is raised.

  Constant-time comparison [C1]. verify() recomputes bcrypt with the stored
       salt and compares the two digests with hmac.compare_digest, so the
       comparison time does not depend on where the digests first differ.

  Timing equalization [C1]. A dummy hash is computed once per hasher (same
       cost as real hashes). verify_dummy() runs a full verification against
       it so "no such user" costs the same as "wrong password".

  72-byte limit. bcrypt only reads the first 72 bytes and bcrypt>=5 raises
       ValueError beyond that. The service rejects longer passwords at
       registration/reset (MAX_PASSWORD_BYTES); verify() treats them as a
       mismatch.

Concurrency:
  Hashing is CPU-bound and deliberately slow. All bcrypt calls run on a
  dedicated ThreadPoolExecutor so a slow hash never blocks request scheduling.
  The caller waits on the future bounded by its Deadline; when the deadline
  passes the future is cancelled and HashingCancelled is raised. The result of
  an abandoned computation is never used.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

import bcrypt

from core.deadline import Deadline
from core.errors import HashingCancelled, HashingError, ValidationError, WeakPassword

DEFAULT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72

T = TypeVar("T")


def _hash_sync(secret: bytes, rounds: int) -> bytes:
    return bcrypt.hashpw(secret, bcrypt.gensalt(rounds=rounds))


def _verify_sync(secret: bytes, hashed: bytes) -> bool:
    try:
        candidate = bcrypt.hashpw(secret, hashed)
    except ValueError:
        # Malformed stored hash, or a secret past the 72-byte limit.
        return False
    return hmac.compare_digest(candidate, hashed)


class SecretHasher:
    """One-way password hashing and verification.

    Usage:
        hasher = SecretHasher(rounds=12, max_workers=4)
        stored = hasher.hash("correct horse")
        hasher.verify(stored, "correct horse")   # True
        hasher.shutdown()
    """

    def __init__(
        self,
        rounds: int = DEFAULT_ROUNDS,
        max_workers: int = 4,
        logger: logging.Logger | None = None,
    ) -> None:
        self.rounds = rounds
        self._log = logger or logging.getLogger("keywarden.auth.hashing")
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="keywarden-hasher")
        # Random dummy secret: nobody can make verify_dummy() succeed on purpose.
        self._dummy_hash = self.hash(secrets.token_urlsafe(16)).encode("ascii")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def hash(self, plaintext: str, deadline: Deadline | None = None) -> str:
        """Return a bcrypt hash of plaintext.

        Raises HashingCancelled if the deadline expires first, HashingError on
        any failure inside bcrypt.
        """
        try:
            digest = self._run(_hash_sync, plaintext.encode("utf-8"), self.rounds, deadline=deadline)
        except HashingError:
            raise
        except Exception as exc:
            self._log.error("bcrypt hash failed: %s", type(exc).__name__)
            raise HashingError() from exc
        return digest.decode("ascii")

    def verify(self, hashed: str, plaintext: str, deadline: Deadline | None = None) -> bool:
        """Return True if plaintext matches the stored bcrypt hash.

        A malformed stored hash verifies as False rather than raising.
        """
        return self._run(_verify_sync, plaintext.encode("utf-8"), hashed.encode("ascii", "replace"), deadline=deadline)

    def verify_dummy(self, plaintext: str, deadline: Deadline | None = None) -> bool:
        """Spend one verification's worth of work against the dummy hash."""
        return self._run(_verify_sync, plaintext.encode("utf-8"), self._dummy_hash, deadline=deadline)

    def needs_rehash(self, hashed: str) -> bool:
        """True if the stored hash was produced with a different cost factor."""
        try:
            return int(hashed.split("$")[2]) != self.rounds
        except (IndexError, ValueError):
            return True

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def _run(self, fn: Callable[..., T], *args, deadline: Deadline | None) -> T:
        if deadline is not None and deadline.expired:
            raise HashingCancelled()
        try:
            future = self._pool.submit(fn, *args)
        except RuntimeError as exc:
            # submit() after shutdown()
            raise HashingError("Hasher worker pool is shut down.") from exc
        timeout = None if deadline is None else deadline.remaining()
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            self._log.warning("Hash operation abandoned: deadline expired")
            raise HashingCancelled() from None


def check_password_policy(password: str, min_length: int) -> None:
    """Raise WeakPassword / ValidationError if `password` cannot be accepted.

    Length is counted in characters for the minimum (what users see) and in
    UTF-8 bytes for bcrypt's 72-byte input ceiling.
    """
    if len(password) < min_length:
        raise WeakPassword(f"Password must be at least {min_length} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
