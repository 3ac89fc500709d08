"""Unit tests for auth/reset.py -- PasswordResetFlow.

Covers:
- request() stores a token with expiry now + ttl; a second request supersedes
  the first
- confirm() check order: InvalidToken, ExpiredToken, WeakPassword
- a failed confirm changes nothing
- expiry boundary: usable at ttl - 1s, expired at exactly ttl
- a token that expires while the new password is hashed is not consumed
- mark_verified switch
- purge_expired() clears stale tokens only
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from auth.models import User
from auth.reset import PasswordResetFlow
from core.errors import ExpiredToken, InvalidToken, NotFound, WeakPassword

TTL = timedelta(hours=24)


@pytest.fixture
def user(memory_store, hasher):
    return memory_store.create_user(
        User(email="r@example.com", hashed_password=hasher.hash("oldpassword"), role="client")
    )


@pytest.fixture
def flow(memory_store, hasher, clock):
    return PasswordResetFlow(memory_store, hasher, ttl=TTL, clock=clock)


def test_request_sets_token_and_expiry(flow, memory_store, user, clock):
    token = flow.request("r@example.com")
    stored = memory_store.find_by_id(user.id)
    assert stored.reset_token == token
    assert stored.reset_token_expires_at == clock.now + TTL


def test_request_unknown_email_is_not_found(flow):
    with pytest.raises(NotFound):
        flow.request("ghost@example.com")


def test_confirm_sets_new_password(flow, memory_store, hasher, user):
    token = flow.request("r@example.com")
    flow.confirm(token, "newpassword")
    stored = memory_store.find_by_id(user.id)
    assert hasher.verify(stored.hashed_password, "newpassword")
    assert not hasher.verify(stored.hashed_password, "oldpassword")
    assert stored.reset_token is None
    assert stored.reset_token_expires_at is None


def test_token_is_single_use(flow, user):
    token = flow.request("r@example.com")
    flow.confirm(token, "newpassword")
    with pytest.raises(InvalidToken):
        flow.confirm(token, "anotherpassword")


def test_second_request_supersedes_first(flow, user):
    first = flow.request("r@example.com")
    second = flow.request("r@example.com")
    with pytest.raises(InvalidToken):
        flow.confirm(first, "newpassword")
    flow.confirm(second, "newpassword")


def test_unknown_token_is_invalid(flow, user):
    with pytest.raises(InvalidToken):
        flow.confirm("bogus", "newpassword")


def test_usable_one_second_before_expiry(flow, user, clock):
    token = flow.request("r@example.com")
    clock.advance(TTL - timedelta(seconds=1))
    flow.confirm(token, "newpassword")


def test_expired_at_exact_ttl(flow, memory_store, hasher, user, clock):
    token = flow.request("r@example.com")
    clock.advance(TTL)
    with pytest.raises(ExpiredToken):
        flow.confirm(token, "newpassword")
    assert hasher.verify(memory_store.find_by_id(user.id).hashed_password, "oldpassword")


def test_token_expiring_while_hashing_is_not_consumed(flow, memory_store, hasher, user, clock, monkeypatch):
    token = flow.request("r@example.com")
    clock.advance(TTL - timedelta(seconds=1))
    original = hasher.hash

    def slow_hash(plaintext, deadline=None):
        clock.advance(timedelta(seconds=2))
        return original(plaintext, deadline=deadline)

    monkeypatch.setattr(hasher, "hash", slow_hash)
    with pytest.raises(InvalidToken):
        flow.confirm(token, "newpassword")
    assert hasher.verify(memory_store.find_by_id(user.id).hashed_password, "oldpassword")


def test_invalid_token_checked_before_password_policy(flow, user):
    with pytest.raises(InvalidToken):
        flow.confirm("bogus", "short")


def test_expiry_checked_before_password_policy(flow, user, clock):
    token = flow.request("r@example.com")
    clock.advance(TTL + timedelta(minutes=1))
    with pytest.raises(ExpiredToken):
        flow.confirm(token, "short")


def test_weak_password_keeps_token_usable(flow, memory_store, hasher, user):
    token = flow.request("r@example.com")
    with pytest.raises(WeakPassword):
        flow.confirm(token, "short")
    assert memory_store.find_by_id(user.id).reset_token == token
    flow.confirm(token, "longenough")
    assert hasher.verify(memory_store.find_by_id(user.id).hashed_password, "longenough")


def test_reset_leaves_verification_alone_by_default(flow, memory_store, user):
    flow.confirm(flow.request("r@example.com"), "newpassword")
    assert memory_store.find_by_id(user.id).is_verified is False


def test_mark_verified_switch(memory_store, hasher, clock, user):
    flow = PasswordResetFlow(memory_store, hasher, ttl=TTL, mark_verified=True, clock=clock)
    flow.confirm(flow.request("r@example.com"), "newpassword")
    assert memory_store.find_by_id(user.id).is_verified is True


def test_purge_expired(flow, memory_store, user, clock):
    flow.request("r@example.com")
    assert flow.purge_expired() == 0
    clock.advance(TTL)
    assert flow.purge_expired() == 1
    assert memory_store.find_by_id(user.id).reset_token is None


def test_concurrent_confirms_have_one_winner(flow, memory_store, hasher, user):
    token = flow.request("r@example.com")
    passwords = [f"password-{i}" for i in range(6)]

    def attempt(password):
        try:
            flow.confirm(token, password)
        except InvalidToken:
            return None
        return password

    with ThreadPoolExecutor(max_workers=6) as pool:
        winners = [p for p in pool.map(attempt, passwords) if p is not None]
    assert len(winners) == 1
    assert hasher.verify(memory_store.find_by_id(user.id).hashed_password, winners[0])
