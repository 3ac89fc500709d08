"""
auth/mailer.py -- EmailDispatcher contract, SMTP transport and test doubles.

The core only ever hands a dispatcher a recipient and a finished URL; message
wording and transport live here. build_link() is the single place links are
assembled from Settings.base_url + path + token.

Implementations:
  SMTPEmailDispatcher      -- smtplib with STARTTLS + login when credentials
                              are configured (port 465 uses implicit TLS).
  LoggingEmailDispatcher   -- development fallback when SMTP_HOST is unset:
                              logs the recipient and that a link was issued.
  RecordingEmailDispatcher -- deterministic test double; keeps every message
                              and can be told to fail.

Every failure surfaces as EmailDeliveryError. What the orchestrator does with
it is its own policy (see auth/service.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import threading
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Protocol
from urllib.parse import urlencode

from core.errors import EmailDeliveryError

_VERIFICATION_SUBJECT = "Verify Your Email Address"
_VERIFICATION_BODY = """\
Dear user,

Please verify your email address by opening the link below:

{url}

If you didn't create an account, please ignore this email.
"""

_RESET_SUBJECT = "Password Reset Request"
_RESET_BODY = """\
Dear user,

We received a request to reset your password. Open the link below to set a new password:

{url}

This link will expire in {ttl_hours} hours.

If you didn't request a password reset, please ignore this email.
"""


def build_link(base_url: str, path: str, token: str) -> str:
    """Join base URL and path and append the token as a query parameter."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}?{urlencode({'token': token})}"


class EmailDispatcher(Protocol):
    """Capability set the core uses to reach a user's inbox."""

    def send_verification_email(self, to: str, url: str) -> None: ...

    def send_password_reset_email(self, to: str, url: str) -> None: ...


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------


class SMTPEmailDispatcher:
    """Send plain-text messages through an SMTP relay.

    One connection per message. Volume here is a handful of messages per
    registration/reset, so a connection pool would not pay for itself.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "no-reply@localhost",
        sender_name: str = "KeyWarden",
        timeout: float = 10.0,
        reset_ttl_hours: int = 24,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.sender_name = sender_name
        self.timeout = timeout
        self.reset_ttl_hours = reset_ttl_hours
        self._log = logger or logging.getLogger("keywarden.auth.mailer")

    def send_verification_email(self, to: str, url: str) -> None:
        self._send(to, _VERIFICATION_SUBJECT, _VERIFICATION_BODY.format(url=url))

    def send_password_reset_email(self, to: str, url: str) -> None:
        self._send(to, _RESET_SUBJECT, _RESET_BODY.format(url=url, ttl_hours=self.reset_ttl_hours))

    def _build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((self.sender_name, self.sender))
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def _send(self, to: str, subject: str, body: str) -> None:
        msg = self._build_message(to, subject, body)
        self._log.info("Sending '%s' to %s via %s:%d", subject, to, self.host, self.port)
        try:
            if self.port == 465:
                smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=ssl.create_default_context())
            else:
                smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with smtp:
                if self.port != 465 and smtp.has_extn("starttls"):
                    smtp.starttls(context=ssl.create_default_context())
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            self._log.error("Failed to send '%s' to %s: %s", subject, to, exc)
            raise EmailDeliveryError() from exc


# ---------------------------------------------------------------------------
# Development / test doubles
# ---------------------------------------------------------------------------


class LoggingEmailDispatcher:
    """Stand-in used when no SMTP relay is configured.

    The URL is logged at DEBUG only: it embeds a live single-use token.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger("keywarden.auth.mailer")

    def send_verification_email(self, to: str, url: str) -> None:
        self._log.info("SMTP not configured; verification email for %s not sent", to)
        self._log.debug("Verification link for %s: %s", to, url)

    def send_password_reset_email(self, to: str, url: str) -> None:
        self._log.info("SMTP not configured; password reset email for %s not sent", to)
        self._log.debug("Password reset link for %s: %s", to, url)


@dataclass(frozen=True)
class SentEmail:
    kind: str  # "verification" | "password_reset"
    to: str
    url: str


class RecordingEmailDispatcher:
    """Test double: records messages in order; raises when fail=True."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[SentEmail] = []
        self._lock = threading.Lock()

    def send_verification_email(self, to: str, url: str) -> None:
        self._record("verification", to, url)

    def send_password_reset_email(self, to: str, url: str) -> None:
        self._record("password_reset", to, url)

    def _record(self, kind: str, to: str, url: str) -> None:
        if self.fail:
            raise EmailDeliveryError()
        with self._lock:
            self.sent.append(SentEmail(kind=kind, to=to, url=url))

    def last(self, kind: str | None = None) -> SentEmail | None:
        with self._lock:
            for item in reversed(self.sent):
                if kind is None or item.kind == kind:
                    return item
        return None
