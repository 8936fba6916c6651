"""
tests/conftest.py -- Shared test fixtures for membergate.

This module provides:
  - FakeClock / RecordingSender: deterministic time and captured codes
  - member_store / verification_store: isolated in-memory stores per test
  - verifier / token_engine / auth_service: the core wired over those stores
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Limits are per process; the suite sends far more logins than a real client would.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("VERIFICATION_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import AuthService
from auth.store import MemberStore, VerificationStore
from auth.tokens import TokenConfig, TokenEngine
from auth.verification import VerificationService

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """CodeSender that keeps the last code per email instead of mailing it."""

    def __init__(self) -> None:
        self.sent: dict[str, str] = {}

    def send(self, email: str, code: str, valid_seconds: int) -> None:
        self.sent[email] = code


def memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures -- fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def member_store() -> Generator[MemberStore, None, None]:
    store = MemberStore(memory_db_url("test_members"))
    yield store
    store.close()


@pytest.fixture
def verification_store(member_store) -> VerificationStore:
    return VerificationStore(engine=member_store.engine)


@pytest.fixture
def verifier(verification_store, clock) -> VerificationService:
    return VerificationService(verification_store, clock=clock)


@pytest.fixture
def token_secret() -> str:
    """Signing key used by every TokenEngine built in these fixtures."""
    return TEST_SECRET


@pytest.fixture
def token_engine() -> TokenEngine:
    return TokenEngine(TokenConfig(secret_key=TEST_SECRET))


@pytest.fixture
def auth_service(member_store, token_engine, verifier, sender) -> AuthService:
    return AuthService(member_store, token_engine, verifier, sender=sender)


@pytest.fixture
def verified_email(auth_service, sender) -> str:
    """An email that has completed verification but is not registered yet."""
    email = "verified@example.com"
    auth_service.request_verification(email)
    auth_service.verify_email(email, sender.sent[email])
    return email


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(member_store: MemberStore, verification_store: VerificationStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test stores and services into app.state so TestClient
    routes see isolated in-memory databases. The OAuth registry is a
    MagicMock; tests that exercise OAuth routes replace create_client.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.member_store = member_store
        app.state.verification_store = verification_store
        app.state.token_engine = service.tokens
        app.state.verifier = service.verifier
        app.state.auth_service = service
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, RecordingSender, FakeClock], None, None]:
    """Yield (client, sender, clock) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers and the real exception handlers. sender captures
    verification codes; clock drives the verification window.
    """
    member_store = MemberStore(memory_db_url("test_api"))
    clock = FakeClock()
    sender = RecordingSender()
    verification_store = VerificationStore(engine=member_store.engine)
    verifier = VerificationService(verification_store, clock=clock)
    service = AuthService(member_store, TokenEngine(TokenConfig(secret_key=TEST_SECRET)), verifier, sender=sender)

    app.router.lifespan_context = _patch_lifespan(member_store, verification_store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, sender, clock

    member_store.close()
