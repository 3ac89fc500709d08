"""
tests/conftest.py -- Shared test fixtures for KeyWarden.

This module provides:
  - FakeClock / clock: a settable UTC clock for expiry tests
  - memory_store / hasher / issuer / dispatcher: the core's collaborators,
    built from the deterministic doubles
  - service: a fully wired AuthenticationService over those doubles
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient over the real app with the patched lifespan
  - token_from_url(): pulls the single-use token out of an emailed link

bcrypt runs at cost 4 everywhere here; production cost 12 would make the
suite take minutes.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.hashing import SecretHasher
from auth.mailer import RecordingEmailDispatcher
from auth.reset import PasswordResetFlow
from auth.service import AuthenticationService
from auth.store import InMemoryCredentialStore
from auth.tokens import TokenIssuer
from auth.verification import VerificationFlow
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"
TEST_ROUNDS = 4
BASE_URL = "http://testserver"


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def token_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


def build_service(
    store,
    dispatcher,
    clock=None,
    *,
    hash_rounds: int = TEST_ROUNDS,
    reset_ttl: timedelta = timedelta(hours=24),
    mark_verified: bool = False,
    request_timeout: float | None = 10.0,
) -> AuthenticationService:
    """Wire an AuthenticationService by hand so tests can inject a clock."""
    hasher = SecretHasher(rounds=hash_rounds, max_workers=4)
    issuer = TokenIssuer(secret=TEST_SECRET, default_ttl=timedelta(hours=1))
    reset_kwargs = {"clock": clock} if clock is not None else {}
    return AuthenticationService(
        store=store,
        hasher=hasher,
        issuer=issuer,
        dispatcher=dispatcher,
        verification=VerificationFlow(store),
        reset=PasswordResetFlow(store, hasher, ttl=reset_ttl, mark_verified=mark_verified, **reset_kwargs),
        base_url=BASE_URL,
        verification_path="/api/v1/auth/verify-email",
        reset_path="/reset-password",
        request_timeout=request_timeout,
    )


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> Generator[InMemoryCredentialStore, None, None]:
    store = InMemoryCredentialStore(clock=clock)
    yield store
    store.close()


@pytest.fixture
def hasher() -> Generator[SecretHasher, None, None]:
    h = SecretHasher(rounds=TEST_ROUNDS, max_workers=2)
    yield h
    h.shutdown()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(secret=TEST_SECRET, default_ttl=timedelta(hours=1))


@pytest.fixture
def dispatcher() -> RecordingEmailDispatcher:
    return RecordingEmailDispatcher()


@pytest.fixture
def service(memory_store, dispatcher, clock) -> Generator[AuthenticationService, None, None]:
    svc = build_service(memory_store, dispatcher, clock)
    yield svc
    svc.close()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store, svc: AuthenticationService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test service into app.state so TestClient routes never touch
    the production database or an SMTP relay.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.auth_service = svc
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthenticationService, RecordingEmailDispatcher], None, None]:
    """Yield (client, service, dispatcher) for API integration tests.

    One client per test module. The store is in-memory and shared across the
    module's tests, so each test registers its own email addresses.
    """
    settings = Settings(debug=True, secret_key=TEST_SECRET, hash_rounds=TEST_ROUNDS)
    store = InMemoryCredentialStore()
    mailbox = RecordingEmailDispatcher()
    svc = build_service(store, mailbox)

    app.router.lifespan_context = _patch_lifespan(settings, store, svc)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc, mailbox

    svc.close()
    store.close()
