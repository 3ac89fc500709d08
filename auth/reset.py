"""
auth/reset.py -- Password-reset tokens: issue, consume, expire.

Reset axis of the per-user state machine:

    NoPendingReset --request--> ResetPending --confirm(ok) | expiry--> NoPendingReset

request() overwrites any earlier token, so an older link stops working at
once, not at its own expiry. confirm() checks in a fixed order -- unknown
token, expired token, weak password -- then hashes and consumes the token with
one conditional write guarded by the token value and its expiry. A
concurrent caller that loses that write gets InvalidToken.

request() raises NotFound for an unknown email. Hiding that from the outside
is AuthenticationService's job, not this flow's.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from auth.hashing import SecretHasher, check_password_policy
from auth.models import PublicUser
from auth.store import CredentialStore, utcnow
from auth.tokens import generate_opaque_token
from core.deadline import Deadline
from core.errors import ConcurrentUpdate, ExpiredToken, InvalidToken, NotFound

DEFAULT_RESET_TTL = timedelta(hours=24)


class PasswordResetFlow:
    """Issues and consumes password-reset tokens.

    mark_verified reproduces the legacy coupling where using a reset link also
    proves email ownership; it is off unless Settings.reset_marks_verified.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        ttl: timedelta = DEFAULT_RESET_TTL,
        password_min_length: int = 8,
        mark_verified: bool = False,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self.ttl = ttl
        self.password_min_length = password_min_length
        self.mark_verified = mark_verified
        self._clock = clock
        self._log = logger or logging.getLogger("keywarden.auth.reset")

    def request(self, email: str, deadline: Deadline | None = None) -> str:
        """Issue a reset token for `email`, replacing any outstanding one.

        Raises NotFound for an unknown email, ConcurrentUpdate if the record
        changed between read and write.
        """
        user = self._store.find_by_email(email, deadline=deadline)
        token = generate_opaque_token()
        updated = replace(user, reset_token=token, reset_token_expires_at=self._clock() + self.ttl)
        if not self._store.update_user(updated, deadline=deadline):
            raise ConcurrentUpdate()
        self._log.info("Password reset token issued for user %s", user.id)
        return token

    def confirm(self, token: str, new_password: str, deadline: Deadline | None = None) -> PublicUser:
        """Consume `token` and set `new_password`.

        Raises InvalidToken, ExpiredToken, WeakPassword or ValidationError
        (in that order of checking), and HashingError/Cancelled from hashing.
        """
        try:
            user = self._store.find_by_reset_token(token, deadline=deadline)
        except NotFound:
            raise InvalidToken() from None

        if not user.reset_token_active(self._clock()):
            raise ExpiredToken()

        check_password_policy(new_password, self.password_min_length)
        new_hash = self._hasher.hash(new_password, deadline=deadline)

        # Re-read the clock: hashing is slow and the token may expire meanwhile.
        consumed = self._store.update_password_hash(
            user.id,
            new_hash,
            reset_token=token,
            now=self._clock(),
            mark_verified=self.mark_verified,
            deadline=deadline,
        )
        if not consumed:
            raise InvalidToken()
        self._log.info("Password reset completed for user %s", user.id)
        return user.public()

    def purge_expired(self, deadline: Deadline | None = None) -> int:
        """Clear every reset token whose expiry has passed."""
        purged = self._store.purge_expired_reset_tokens(self._clock(), deadline=deadline)
        if purged:
            self._log.info("Purged %d expired reset token(s)", purged)
        return purged
