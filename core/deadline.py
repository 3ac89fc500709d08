"""
core/deadline.py -- Caller-supplied time budget threaded through the core.

A Deadline is created once per request (api/ builds one from
Settings.request_timeout_seconds) and passed down to every store and hasher
call. Stores call check() before touching I/O; the hasher bounds its wait on
the worker pool with remaining().

Monotonic clock: wall-clock adjustments must not extend or shrink a budget.
"""

from __future__ import annotations

import time

from core.errors import Cancelled


class Deadline:
    """An absolute point on the monotonic clock after which work must stop.

    Usage:
        deadline = Deadline.after(5.0)
        store.find_by_email(email, deadline=deadline)
    """

    __slots__ = ("_expires_at",)

    def __init__(self, expires_at: float) -> None:
        self._expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def check(self) -> None:
        """Raise Cancelled if the deadline has passed."""
        if self.expired:
            raise Cancelled()

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.3f}s)"


def check(deadline: Deadline | None) -> None:
    """Module-level helper so call sites need no `if deadline` guard."""
    if deadline is not None:
        deadline.check()
