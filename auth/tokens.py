"""
auth/tokens.py -- Session token signing/verification and opaque token generation.

Security design decisions:
  Session tokens: python-jose with HS256. Tokens are signed with the shared
       SECRET_KEY and carry user_id, role, email, iat and exp. Rotating the key
       invalidates every token issued under the old one -- accepted behaviour.

  Distinct failure kinds: verify() raises TokenExpired for a stale token,
       SignatureInvalid for a forged one and TokenMalformed for anything that
       is not a well-formed session token. Callers (the HTTP dependency) need
       to tell "log in again" apart from "someone tampered with this".
       The signature is checked before expiry, so an expired forgery is
       reported as forged.

  Opaque tokens: verification and reset tokens are random lookup keys with no
       decodable structure. secrets.token_urlsafe(32) gives 256 bits of
       entropy -- never derived from the email, id or clock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError, JWTError

from auth.models import SessionClaims
from core.errors import SignatureInvalid, TokenExpired, TokenMalformed, TokenSigningError

if TYPE_CHECKING:
    from auth.models import User

_ALLOWED_ALGORITHMS = ("HS256", "HS384", "HS512")
_SUBJECT_CLAIMS = ("user_id", "role", "email")
OPAQUE_TOKEN_BYTES = 32


def generate_opaque_token() -> str:
    """Return a fresh single-use token (URL-safe, 256 bits of entropy)."""
    return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)


class TokenIssuer:
    """Signs and verifies short-lived session tokens.

    Usage:
        issuer = TokenIssuer(secret=settings.secret_key, default_ttl=timedelta(hours=1))
        token = issuer.issue({"user_id": 1, "role": "client", "email": "a@x.com"})
        claims = issuer.verify(token)
    """

    def __init__(
        self,
        secret: str,
        default_ttl: timedelta,
        algorithm: str = "HS256",
        logger: logging.Logger | None = None,
    ) -> None:
        if algorithm not in _ALLOWED_ALGORITHMS:
            raise ValueError(f"Unsupported signing algorithm: {algorithm!r}")
        if not secret:
            raise ValueError("A signing secret is required.")
        self._secret = secret
        self._algorithm = algorithm
        self.default_ttl = default_ttl
        self._log = logger or logging.getLogger("keywarden.auth.tokens")

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, subject_claims: dict[str, Any], ttl: timedelta | None = None) -> str:
        """Encode a signed token for the given subject claims.

        subject_claims must contain user_id, role and email. iat and exp are
        added here; ttl defaults to the issuer's default_ttl.
        """
        missing = [k for k in _SUBJECT_CLAIMS if k not in subject_claims]
        if missing:
            raise TokenSigningError(f"Missing subject claims: {', '.join(missing)}")
        now = datetime.now(timezone.utc)
        payload = {
            "user_id": subject_claims["user_id"],
            "role": subject_claims["role"],
            "email": subject_claims["email"],
            "iat": now,
            "exp": now + (ttl if ttl is not None else self.default_ttl),
        }
        try:
            return jwt.encode(payload, self._secret, algorithm=self._algorithm)
        except JOSEError as exc:
            self._log.error("Failed to sign session token: %s", exc)
            raise TokenSigningError() from exc

    def issue_for(self, user: User, ttl: timedelta | None = None) -> str:
        return self.issue({"user_id": user.id, "role": user.role, "email": user.email}, ttl)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str) -> SessionClaims:
        """Verify signature and expiry; return the session claims.

        Raises TokenMalformed, SignatureInvalid or TokenExpired.
        """
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed() from exc

        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            # Signature was valid but exp/iat are ill-typed.
            raise TokenMalformed() from exc
        except JWTError as exc:
            raise SignatureInvalid() from exc

        return _claims_from_payload(payload)


def _claims_from_payload(payload: dict[str, Any]) -> SessionClaims:
    user_id = payload.get("user_id")
    role = payload.get("role")
    email = payload.get("email")
    issued_at = payload.get("iat")
    expires_at = payload.get("exp")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise TokenMalformed("Session token has no valid user_id claim.")
    if not isinstance(role, str) or not isinstance(email, str):
        raise TokenMalformed("Session token has no valid role/email claims.")
    if not isinstance(issued_at, (int, float)) or not isinstance(expires_at, (int, float)):
        raise TokenMalformed("Session token has no valid iat/exp claims.")
    return SessionClaims(
        user_id=user_id,
        role=role,
        email=email,
        issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
    )
