"""
Pytest configuration and fixtures for the Rapport backend tests.

Provides a per-test SQLite in-memory database, a scripted stand-in for the
model provider client, and a FastAPI test client wired to both.
"""

import os

# Configure the process before any Rapport import reads the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio
from typing import Any, Generator, Optional

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from Rapport.auth import require_user_id
from Rapport.config import Settings
from Rapport.database import Base, get_db
from Rapport.rate_limiters.rate_limiter import SlidingWindowRateLimiter
from Rapport.services.ai_client import ChatCompletion

import Rapport.models  # noqa: F401  # registers tables on Base.metadata

TEST_USER_HEADER = "X-Test-User"


class FakeAIClient:
    """Scripted replacement for AIChatClient.

    `chat()` returns `completion` (or raises `error`); `chat_stream()` yields
    `stream_pieces`, then raises `stream_error` if set, then blocks forever if
    `stream_hangs` is set. Every call is recorded in `calls`.
    """

    model = "claude-sonnet-4-5"

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.completion = ChatCompletion(
            content="Send a short voice note saying you were thinking of them.",
            model=self.model,
            input_tokens=42,
            output_tokens=12,
            stop_reason="stop",
        )
        self.error: Optional[Exception] = None
        self.stream_pieces: list[str] = ["Hello", " there"]
        self.stream_error: Optional[Exception] = None
        self.stream_hangs = False
        self.closed = False

    async def chat(self, turns, **kwargs) -> ChatCompletion:
        self.calls.append({"kind": "chat", "turns": list(turns), **kwargs})
        if self.error is not None:
            raise self.error
        return self.completion

    async def chat_stream(self, turns, *, cancel_event: Optional[asyncio.Event] = None, **kwargs):
        self.calls.append({"kind": "stream", "turns": list(turns), **kwargs})
        for piece in self.stream_pieces:
            if cancel_event is not None and cancel_event.is_set():
                return
            yield piece
            await asyncio.sleep(0)
        if self.stream_error is not None:
            raise self.stream_error
        if self.stream_hangs:
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def test_engine():
    """SQLite in-memory engine shared across threads (TestClient runs the app in a worker thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_ai() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None, database_url="sqlite://", auth_jwt_secret="test-secret")


@pytest.fixture
def auth_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_requests=1000, window_seconds=900)


@pytest.fixture
def app(test_settings, fake_ai, session_factory, auth_rate_limiter):
    from Rapport.app import create_app

    app = create_app(
        test_settings,
        ai_client=fake_ai,
        session_factory=session_factory,
        ai_rate_limiter=SlidingWindowRateLimiter(max_requests=1000, window_seconds=60),
        auth_rate_limiter=auth_rate_limiter,
    )

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def api_client(app) -> Generator[TestClient, None, None]:
    """Test client whose caller identity comes from the X-Test-User header."""

    def override_user_id(request: Request) -> str:
        user_id = request.headers.get(TEST_USER_HEADER, "user-a")
        request.state.user_id = user_id
        return user_id

    app.dependency_overrides[require_user_id] = override_user_id
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
