"""
core/errors.py -- Typed failure kinds for the credential lifecycle.

Every failure the core can produce is a CredentialError subclass carrying a
stable machine-readable `code` and a default human `message`. Flows raise
them; AuthenticationService lets them propagate unchanged; api/main.py maps
them to HTTP status codes in one place.

The core never retries. PersistenceError (and ConcurrentUpdate) are the
retryable kinds -- retry policy belongs to the HTTP caller.

Enumeration note: InvalidCredentials deliberately shares its message with
nothing that reveals whether the email exists. AccountNotVerified is only
raised after the password has been proven correct.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for every failure raised by the credential core."""

    code: str = "credential_error"
    message: str = "Credential operation failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class ValidationError(CredentialError):
    code = "validation_error"
    message = "Request validation failed."


class WeakPassword(ValidationError):
    code = "weak_password"
    message = "Password does not meet the minimum length policy."


# ---------------------------------------------------------------------------
# Store outcomes
# ---------------------------------------------------------------------------


class Conflict(CredentialError):
    code = "conflict"
    message = "The record conflicts with an existing one."


class EmailTaken(Conflict):
    code = "email_taken"
    message = "An account with that email already exists."


class NotFound(CredentialError):
    code = "not_found"
    message = "No matching record."


class PersistenceError(CredentialError):
    """Store or transport failure. Retryable at the HTTP boundary."""

    code = "persistence_error"
    message = "The credential store is unavailable."


class ConcurrentUpdate(PersistenceError):
    """A compare-and-swap write lost to a concurrent writer."""

    code = "concurrent_update"
    message = "The record was modified concurrently. Retry the request."


# ---------------------------------------------------------------------------
# Single-use tokens
# ---------------------------------------------------------------------------


class InvalidToken(CredentialError):
    code = "invalid_token"
    message = "Invalid or already used token."


class ExpiredToken(CredentialError):
    code = "expired_token"
    message = "The token has expired."


class AlreadyVerified(CredentialError):
    code = "already_verified"
    message = "Email is already verified."


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class InvalidCredentials(CredentialError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountNotVerified(CredentialError):
    code = "account_not_verified"
    message = "Account not verified. Check your email for the verification link."


# ---------------------------------------------------------------------------
# Hashing / cancellation
# ---------------------------------------------------------------------------


class HashingError(CredentialError):
    code = "hashing_error"
    message = "Password hashing failed."


class Cancelled(CredentialError):
    """The caller's deadline expired before the operation completed."""

    code = "cancelled"
    message = "The operation did not complete before its deadline."


class HashingCancelled(HashingError, Cancelled):
    code = "cancelled"
    message = "Password hashing did not complete before its deadline."


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TokenError(CredentialError):
    code = "token_error"
    message = "Session token rejected."


class TokenExpired(TokenError):
    code = "token_expired"
    message = "Session token has expired."


class TokenMalformed(TokenError):
    code = "token_malformed"
    message = "Session token is malformed."


class SignatureInvalid(TokenError):
    code = "signature_invalid"
    message = "Session token signature is invalid."


class TokenSigningError(TokenError):
    code = "token_signing_error"
    message = "Failed to sign session token."


# ---------------------------------------------------------------------------
# Email dispatch
# ---------------------------------------------------------------------------


class EmailDeliveryError(CredentialError):
    code = "email_delivery_failed"
    message = "Failed to send email."
