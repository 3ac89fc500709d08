"""Unit tests for auth/service.py -- AuthenticationService end to end.

Runs the whole core against the in-memory store and the recording email
dispatcher.

Covers:
- register -> verify -> login happy path; emailed link carries the token
- input validation (email, role, password policy) and EmailTaken
- login enumeration rules: unknown email == wrong password; unverified only
  after a correct password
- verification / reset error kinds surface unchanged
- email dispatch failure policy per operation
- hash cost upgrade on login, dropped when a reset lands first
- expired deadline cancels the operation
"""

from datetime import timedelta

import pytest

from auth.mailer import RecordingEmailDispatcher
from auth.service import PASSWORD_RESET_REQUESTED
from conftest import build_service, token_from_url
from core.deadline import Deadline
from core.errors import (
    AccountNotVerified,
    AlreadyVerified,
    Cancelled,
    EmailDeliveryError,
    EmailTaken,
    ExpiredToken,
    HashingError,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    ValidationError,
    WeakPassword,
)


def _register_verified(service, dispatcher, email="alice@x.com", password="password123", role="client"):
    service.register(email, password, role)
    service.verify_email(token_from_url(dispatcher.last("verification").url))


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_creates_unverified_user_and_sends_link(self, service, memory_store, dispatcher):
        registration = service.register("alice@x.com", "password123", "client")
        assert registration.user.email == "alice@x.com"
        assert registration.user.role == "client"

        stored = memory_store.find_by_email("alice@x.com")
        assert stored.is_verified is False
        assert stored.hashed_password != "password123"
        assert stored.verification_token == registration.verification_token

        sent = dispatcher.last("verification")
        assert sent.to == "alice@x.com"
        assert sent.url.startswith("http://testserver/api/v1/auth/verify-email?token=")
        assert token_from_url(sent.url) == registration.verification_token

    def test_duplicate_email_is_email_taken(self, service):
        service.register("alice@x.com", "password123", "client")
        with pytest.raises(EmailTaken):
            service.register("alice@x.com", "otherpassword", "admin")

    def test_short_password_is_weak(self, service, memory_store):
        with pytest.raises(WeakPassword):
            service.register("bob@x.com", "short", "client")
        with pytest.raises(NotFound):
            memory_store.find_by_email("bob@x.com")

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "two@@x.com", "sp ace@x.com"])
    def test_bad_email_is_rejected(self, service, email):
        with pytest.raises(ValidationError):
            service.register(email, "password123", "client")

    def test_unknown_role_is_rejected(self, service):
        with pytest.raises(ValidationError):
            service.register("alice@x.com", "password123", "superuser")

    def test_all_roles_accepted(self, service):
        for role in ("client", "sales_rep", "admin"):
            assert service.register(f"{role}@x.com", "password123", role).user.role == role


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_after_verification_issues_token(self, service, dispatcher):
        _register_verified(service, dispatcher)
        result = service.login("alice@x.com", "password123")
        assert result.expires_in == 3600
        claims = service.issuer.verify(result.access_token)
        assert claims.email == "alice@x.com"
        assert claims.role == "client"
        assert claims.user_id == result.user.id

    def test_unverified_login_with_correct_password(self, service):
        service.register("alice@x.com", "password123", "client")
        with pytest.raises(AccountNotVerified):
            service.login("alice@x.com", "password123")

    def test_unverified_login_with_wrong_password_is_invalid_credentials(self, service):
        service.register("alice@x.com", "password123", "client")
        with pytest.raises(InvalidCredentials):
            service.login("alice@x.com", "wrongpassword")

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, service, dispatcher):
        _register_verified(service, dispatcher)
        with pytest.raises(InvalidCredentials) as unknown:
            service.login("ghost@x.com", "password123")
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("alice@x.com", "wrongpassword")
        assert unknown.value.code == wrong.value.code
        assert unknown.value.message == wrong.value.message == "Invalid email or password."

    def test_unknown_email_runs_dummy_verification(self, service, monkeypatch):
        calls = []
        original = service.hasher.verify_dummy

        def spy(plaintext, deadline=None):
            calls.append(plaintext)
            return original(plaintext, deadline=deadline)

        monkeypatch.setattr(service.hasher, "verify_dummy", spy)
        with pytest.raises(InvalidCredentials):
            service.login("ghost@x.com", "password123")
        assert calls == ["password123"]

    def test_email_match_is_case_sensitive(self, service, dispatcher):
        _register_verified(service, dispatcher)
        with pytest.raises(InvalidCredentials):
            service.login("Alice@x.com", "password123")

    def test_login_upgrades_hash_cost(self, memory_store, dispatcher, clock):
        weak = build_service(memory_store, dispatcher, clock, hash_rounds=4)
        _register_verified(weak, dispatcher)
        weak.close()

        strong = build_service(memory_store, dispatcher, clock, hash_rounds=5)
        try:
            assert memory_store.find_by_email("alice@x.com").hashed_password.startswith("$2b$04$")
            strong.login("alice@x.com", "password123")
            upgraded = memory_store.find_by_email("alice@x.com").hashed_password
            assert upgraded.startswith("$2b$05$")
            strong.login("alice@x.com", "password123")
        finally:
            strong.close()

    def test_hash_upgrade_does_not_undo_a_concurrent_reset(self, memory_store, dispatcher, clock, monkeypatch):
        weak = build_service(memory_store, dispatcher, clock, hash_rounds=4)
        _register_verified(weak, dispatcher)
        weak.close()

        strong = build_service(memory_store, dispatcher, clock, hash_rounds=5)

        def reset_then_rehash(hashed):
            # A reset completes after login verified the old password.
            strong.request_password_reset("alice@x.com")
            strong.reset_password(token_from_url(dispatcher.last("password_reset").url), "newpassword")
            return True

        monkeypatch.setattr(strong.hasher, "needs_rehash", reset_then_rehash)
        try:
            strong.login("alice@x.com", "password123")
            stored = memory_store.find_by_email("alice@x.com").hashed_password
            assert strong.hasher.verify(stored, "newpassword")
            assert not strong.hasher.verify(stored, "password123")
        finally:
            strong.close()


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_verify_twice_is_invalid_token(self, service, dispatcher):
        service.register("alice@x.com", "password123", "client")
        token = token_from_url(dispatcher.last("verification").url)
        service.verify_email(token)
        with pytest.raises(InvalidToken):
            service.verify_email(token)

    def test_resend_replaces_token(self, service, dispatcher):
        service.register("alice@x.com", "password123", "client")
        old = token_from_url(dispatcher.last("verification").url)
        service.resend_verification("alice@x.com")
        new = token_from_url(dispatcher.last("verification").url)
        assert new != old
        with pytest.raises(InvalidToken):
            service.verify_email(old)
        service.verify_email(new)

    def test_resend_after_verification_is_already_verified(self, service, dispatcher):
        _register_verified(service, dispatcher)
        with pytest.raises(AlreadyVerified):
            service.resend_verification("alice@x.com")

    def test_resend_unknown_email_is_not_found(self, service):
        with pytest.raises(NotFound):
            service.resend_verification("ghost@x.com")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_full_reset_flow(self, service, dispatcher):
        _register_verified(service, dispatcher)
        message = service.request_password_reset("alice@x.com")
        assert message == PASSWORD_RESET_REQUESTED

        sent = dispatcher.last("password_reset")
        assert sent.to == "alice@x.com"
        assert sent.url.startswith("http://testserver/reset-password?token=")

        service.reset_password(token_from_url(sent.url), "brandnewpass")
        with pytest.raises(InvalidCredentials):
            service.login("alice@x.com", "password123")
        assert service.login("alice@x.com", "brandnewpass").access_token

    def test_unknown_email_gets_same_message_and_no_mail(self, service, dispatcher):
        assert service.request_password_reset("ghost@x.com") == PASSWORD_RESET_REQUESTED
        assert dispatcher.last("password_reset") is None

    def test_request_losing_a_concurrent_write_gets_same_message(self, service, dispatcher, memory_store, monkeypatch):
        _register_verified(service, dispatcher)
        original = memory_store.find_by_email

        def read_then_bump(email, deadline=None):
            user = original(email, deadline=deadline)
            assert memory_store.update_user(user)  # another writer lands first
            return user

        monkeypatch.setattr(memory_store, "find_by_email", read_then_bump)
        assert service.request_password_reset("alice@x.com") == PASSWORD_RESET_REQUESTED
        assert dispatcher.last("password_reset") is None
        assert original("alice@x.com").reset_token is None

    def test_expired_reset_token(self, service, dispatcher, clock):
        _register_verified(service, dispatcher)
        service.request_password_reset("alice@x.com")
        token = token_from_url(dispatcher.last("password_reset").url)
        clock.advance(timedelta(hours=24))
        with pytest.raises(ExpiredToken):
            service.reset_password(token, "brandnewpass")

    def test_reset_on_unverified_account_keeps_it_unverified(self, service, dispatcher, memory_store):
        service.register("alice@x.com", "password123", "client")
        service.request_password_reset("alice@x.com")
        service.reset_password(token_from_url(dispatcher.last("password_reset").url), "brandnewpass")
        assert memory_store.find_by_email("alice@x.com").is_verified is False
        with pytest.raises(AccountNotVerified):
            service.login("alice@x.com", "brandnewpass")

    def test_purge_expired_reset_tokens(self, service, dispatcher, clock, memory_store):
        _register_verified(service, dispatcher)
        service.request_password_reset("alice@x.com")
        clock.advance(timedelta(hours=25))
        assert service.purge_expired_reset_tokens() == 1
        assert memory_store.find_by_email("alice@x.com").reset_token is None


# ---------------------------------------------------------------------------
# Email dispatch failures
# ---------------------------------------------------------------------------


class TestDispatchFailures:
    def test_register_keeps_account_when_email_fails(self, memory_store, clock):
        failing = RecordingEmailDispatcher(fail=True)
        svc = build_service(memory_store, failing, clock)
        try:
            with pytest.raises(EmailDeliveryError):
                svc.register("alice@x.com", "password123", "client")
            stored = memory_store.find_by_email("alice@x.com")
            assert stored.verification_token is not None

            failing.fail = False
            svc.resend_verification("alice@x.com")
            svc.verify_email(token_from_url(failing.last("verification").url))
            assert svc.login("alice@x.com", "password123").access_token
        finally:
            svc.close()

    def test_forgot_password_hides_email_failure(self, memory_store, clock):
        mailbox = RecordingEmailDispatcher()
        svc = build_service(memory_store, mailbox, clock)
        try:
            svc.register("alice@x.com", "password123", "client")
            mailbox.fail = True
            assert svc.request_password_reset("alice@x.com") == PASSWORD_RESET_REQUESTED
            assert memory_store.find_by_email("alice@x.com").reset_token is not None
        finally:
            svc.close()


# ---------------------------------------------------------------------------
# Deadlines / lookups
# ---------------------------------------------------------------------------


def test_expired_deadline_cancels_login(service, dispatcher):
    _register_verified(service, dispatcher)
    with pytest.raises(Cancelled):
        service.login("alice@x.com", "password123", deadline=Deadline.after(-1))


def test_get_user_returns_public_record(service):
    registration = service.register("alice@x.com", "password123", "sales_rep")
    public = service.get_user(registration.user.id)
    assert public == registration.user
    assert not hasattr(public, "hashed_password")
    with pytest.raises(NotFound):
        service.get_user(999)


def test_close_stops_hashing(memory_store, dispatcher, clock):
    svc = build_service(memory_store, dispatcher, clock)
    svc.close()
    with pytest.raises(HashingError):
        svc.register("alice@x.com", "password123", "client")
