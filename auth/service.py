"""
auth/service.py -- AuthenticationService: the single entry point for the HTTP layer.

Orchestrates registration and login and delegates verification and reset to
their flows, letting every CredentialError propagate unchanged. Routes never
talk to the store, hasher or flows directly.

Enumeration rules [C1]:
  login()   -- unknown email and wrong password both raise InvalidCredentials,
               and both pay for one bcrypt verification (dummy hash for the
               unknown email). AccountNotVerified is only reachable after the
               password has been proven correct.
  request_password_reset() -- always returns PASSWORD_RESET_REQUESTED,
               whether or not the email has an account, and also when
               the token write loses to a concurrent update.

Email dispatch policy (state is never rolled back):
  register / resend_verification -- the token is already stored when the send
      fails; EmailDeliveryError is raised so the caller knows to offer
      "resend". The account and its token stay valid.
  request_password_reset -- a send failure is logged and the generic success
      message is still returned; surfacing it would reveal that the email
      has an account.

Deadlines: every public method accepts a Deadline; when none is given one is
created from request_timeout so no call is unbounded.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta

from auth.hashing import SecretHasher, check_password_policy
from auth.mailer import EmailDispatcher, build_link
from auth.models import ROLES, LoginResult, PublicUser, Registration, User
from auth.reset import PasswordResetFlow
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from auth.verification import VerificationFlow
from core.config import Settings
from core.deadline import Deadline
from core.errors import (
    AccountNotVerified,
    ConcurrentUpdate,
    Conflict,
    EmailDeliveryError,
    EmailTaken,
    InvalidCredentials,
    NotFound,
    ValidationError,
)

PASSWORD_RESET_REQUESTED = "If an account with that email exists, a password reset link has been sent."

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_EMAIL_MAX_LENGTH = 255


class AuthenticationService:
    """Registration, login, verification and password reset.

    Usage:
        service = AuthenticationService.from_settings(settings, store, dispatcher)
        registration = service.register("a@x.com", "password123", "client")
        service.verify_email(registration.verification_token)
        result = service.login("a@x.com", "password123")
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        issuer: TokenIssuer,
        dispatcher: EmailDispatcher,
        verification: VerificationFlow,
        reset: PasswordResetFlow,
        *,
        base_url: str,
        verification_path: str,
        reset_path: str,
        password_min_length: int = 8,
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.dispatcher = dispatcher
        self.verification = verification
        self.reset = reset
        self.base_url = base_url
        self.verification_path = verification_path
        self.reset_path = reset_path
        self.password_min_length = password_min_length
        self.request_timeout = request_timeout
        self._log = logger or logging.getLogger("keywarden.auth.service")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CredentialStore,
        dispatcher: EmailDispatcher,
        logger: logging.Logger | None = None,
    ) -> "AuthenticationService":
        """Wire hasher, issuer and flows from one validated Settings object."""
        log = logger or logging.getLogger("keywarden.auth")
        hasher = SecretHasher(
            rounds=settings.hash_rounds,
            max_workers=settings.hash_workers,
            logger=log.getChild("hashing"),
        )
        issuer = TokenIssuer(
            secret=settings.secret_key,
            default_ttl=timedelta(seconds=settings.token_expire_seconds),
            logger=log.getChild("tokens"),
        )
        return cls(
            store=store,
            hasher=hasher,
            issuer=issuer,
            dispatcher=dispatcher,
            verification=VerificationFlow(store, logger=log.getChild("verification")),
            reset=PasswordResetFlow(
                store,
                hasher,
                ttl=timedelta(seconds=settings.reset_token_ttl_seconds),
                password_min_length=settings.password_min_length,
                mark_verified=settings.reset_marks_verified,
                logger=log.getChild("reset"),
            ),
            base_url=settings.base_url,
            verification_path=settings.verification_path,
            reset_path=settings.reset_path,
            password_min_length=settings.password_min_length,
            request_timeout=settings.request_timeout_seconds,
            logger=log.getChild("service"),
        )

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, role: str, deadline: Deadline | None = None) -> Registration:
        """Create an unverified account and send its verification link.

        Raises ValidationError (bad email/role), WeakPassword, EmailTaken,
        EmailDeliveryError (account created, email not sent).
        """
        deadline = self._deadline(deadline)
        _check_email(email)
        if role not in ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ROLES)}.")
        check_password_policy(password, self.password_min_length)

        hashed = self.hasher.hash(password, deadline=deadline)
        try:
            user = self.store.create_user(User(email=email, hashed_password=hashed, role=role), deadline=deadline)
        except Conflict:
            raise EmailTaken() from None

        token = self.verification.begin(user, deadline=deadline)
        self._log.info("Registered user %s (%s, role=%s)", user.id, user.email, user.role)
        self._send_verification(user.email, token)
        return Registration(user=user.public(), verification_token=token)

    def login(self, email: str, password: str, deadline: Deadline | None = None) -> LoginResult:
        """Check credentials and issue a session token.

        Raises InvalidCredentials (unknown email or wrong password, same cost
        either way) or AccountNotVerified (right password, unverified email).
        """
        deadline = self._deadline(deadline)
        try:
            user = self.store.find_by_email(email, deadline=deadline)
        except NotFound:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            self.hasher.verify_dummy(password, deadline=deadline)
            self._log.info("Failed login: unknown email")
            raise InvalidCredentials() from None

        if not self.hasher.verify(user.hashed_password, password, deadline=deadline):
            self._log.info("Failed login for user %s: wrong password", user.id)
            raise InvalidCredentials()
        if not user.is_verified:
            self._log.info("Login refused for unverified user %s", user.id)
            raise AccountNotVerified()

        if self.hasher.needs_rehash(user.hashed_password):
            self._upgrade_hash(user, password, deadline)

        token = self.issuer.issue_for(user)
        self._log.info("User %s authenticated", user.id)
        return LoginResult(
            access_token=token,
            expires_in=int(self.issuer.default_ttl.total_seconds()),
            user=user.public(),
        )

    def _upgrade_hash(self, user: User, password: str, deadline: Deadline) -> None:
        """Re-hash with the current cost factor after a successful login.

        The write is conditional on the hash that was verified; if the
        password changed meanwhile (a reset), the upgrade is dropped.
        """
        new_hash = self.hasher.hash(password, deadline=deadline)
        if self.store.update_password_hash(
            user.id, new_hash, expected_hash=user.hashed_password, deadline=deadline
        ):
            self._log.info("Upgraded password hash cost for user %s", user.id)
        else:
            self._log.info("Skipped hash upgrade for user %s: password changed concurrently", user.id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str, deadline: Deadline | None = None) -> PublicUser:
        return self.verification.confirm(token, deadline=self._deadline(deadline))

    def resend_verification(self, email: str, deadline: Deadline | None = None) -> None:
        """Replace the verification token for `email` and send a fresh link.

        Raises NotFound, AlreadyVerified or EmailDeliveryError.
        """
        token = self.verification.resend(email, deadline=self._deadline(deadline))
        self._send_verification(email, token)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, deadline: Deadline | None = None) -> str:
        """Start a reset for `email`. Returns the same message for every input."""
        try:
            token = self.reset.request(email, deadline=self._deadline(deadline))
        except NotFound:
            self._log.info("Password reset requested for unknown email")
            return PASSWORD_RESET_REQUESTED
        except ConcurrentUpdate:
            # The record changed between read and write; the competing write
            # keeps whatever token it holds. No email goes out for this call.
            self._log.info("Password reset request lost a concurrent write")
            return PASSWORD_RESET_REQUESTED

        url = build_link(self.base_url, self.reset_path, token)
        try:
            self.dispatcher.send_password_reset_email(email, url)
        except EmailDeliveryError:
            self._log.error("Password reset email to %s could not be sent", email)
        return PASSWORD_RESET_REQUESTED

    def reset_password(self, token: str, new_password: str, deadline: Deadline | None = None) -> PublicUser:
        return self.reset.confirm(token, new_password, deadline=self._deadline(deadline))

    def purge_expired_reset_tokens(self, deadline: Deadline | None = None) -> int:
        return self.reset.purge_expired(deadline=self._deadline(deadline))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_user(self, user_id: int, deadline: Deadline | None = None) -> PublicUser:
        """Return the public identity for `user_id`. Raises NotFound."""
        return self.store.find_by_id(user_id, deadline=self._deadline(deadline)).public()

    def close(self) -> None:
        self.hasher.shutdown()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deadline(self, deadline: Deadline | None) -> Deadline | None:
        if deadline is None and self.request_timeout is not None:
            return Deadline.after(self.request_timeout)
        return deadline

    def _send_verification(self, email: str, token: str) -> None:
        url = build_link(self.base_url, self.verification_path, token)
        try:
            self.dispatcher.send_verification_email(email, url)
        except EmailDeliveryError as exc:
            self._log.error("Verification email to %s could not be sent", email)
            raise EmailDeliveryError(
                "Account state was saved, but the verification email could not be sent. Request a new link."
            ) from exc


def _check_email(email: str) -> None:
    if len(email) > _EMAIL_MAX_LENGTH or not _EMAIL_PATTERN.match(email):
        raise ValidationError("A valid email address is required.")
