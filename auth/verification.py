"""
auth/verification.py -- Email-ownership verification tokens.

Verification axis of the per-user state machine:

    Unverified --confirm(token)--> Verified   (terminal)

begin()/resend() attach a fresh opaque token to an unverified user; the
previous token, if any, stops matching the moment the new one is written.
confirm() consumes a token with one conditional write guarded by the token
value, so of two concurrent confirms presenting the same token exactly one
wins and the other sees InvalidToken.

Tokens are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from auth.models import PublicUser, User
from auth.store import CredentialStore
from auth.tokens import generate_opaque_token
from core.deadline import Deadline
from core.errors import AlreadyVerified, ConcurrentUpdate, InvalidToken, NotFound


class VerificationFlow:
    def __init__(self, store: CredentialStore, logger: logging.Logger | None = None) -> None:
        self._store = store
        self._log = logger or logging.getLogger("keywarden.auth.verification")

    def begin(self, user: User, deadline: Deadline | None = None) -> str:
        """Attach a fresh verification token to an unverified user and return it.

        Raises AlreadyVerified for a verified user, ConcurrentUpdate if the
        record changed since `user` was read.
        """
        if user.is_verified:
            raise AlreadyVerified()
        token = generate_opaque_token()
        if not self._store.update_user(replace(user, verification_token=token), deadline=deadline):
            raise ConcurrentUpdate()
        self._log.info("Verification token issued for user %s", user.id)
        return token

    def resend(self, email: str, deadline: Deadline | None = None) -> str:
        """Replace the outstanding token for `email` and return the new one.

        Raises NotFound for an unknown email, AlreadyVerified if the account
        is already verified.
        """
        user = self._store.find_by_email(email, deadline=deadline)
        if user.is_verified:
            raise AlreadyVerified()
        return self.begin(user, deadline=deadline)

    def confirm(self, token: str, deadline: Deadline | None = None) -> PublicUser:
        """Consume `token`: mark its holder verified and clear the token.

        Raises InvalidToken if the token is unknown or was consumed already,
        including by a concurrent caller that won the conditional write.
        """
        try:
            user = self._store.find_by_verification_token(token, deadline=deadline)
        except NotFound:
            raise InvalidToken() from None
        consumed = self._store.update_verification_status(
            user.id, True, verification_token=token, deadline=deadline
        )
        if not consumed:
            raise InvalidToken()
        self._log.info("Email verified for user %s", user.id)
        return user.public()
