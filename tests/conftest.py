"""Pytest configuration and fixtures."""

import asyncio
import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bedtime import models  # noqa: F401
from bedtime.database import Base
from bedtime.models.story_request import StoryRequest, utcnow
from bedtime.services.change_feed import ChangeFeed
from bedtime.services.store import RequestStore

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakeStarter:
    """Stands in for the functions client; records start calls."""

    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.calls = []

    async def start_story(self, request_id):
        self.calls.append(request_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error

    async def create_series(self, payload):
        return {"series": {"id": "series-1"}, "request": {"id": "episode-req-1", "episode_number": 1}}


@pytest.fixture(scope="function")
def session_factory():
    """Create a test database for each test."""
    # Use in-memory SQLite shared across threads for testing
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    yield TestingSessionLocal

    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory):
    """A session for arranging rows directly."""
    db = session_factory()

    yield db

    db.close()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(session_factory, feed):
    return RequestStore(session_factory, feed=feed)


@pytest.fixture
def starter():
    return FakeStarter()


@pytest.fixture
def add_request(test_db):
    """Insert a request row without publishing a change."""

    def _add(status="queued", user_id=USER_ID, age=timedelta(0), **fields):
        request = StoryRequest(
            user_id=user_id,
            status=status,
            created_at=utcnow() - age,
            **fields,
        )
        test_db.add(request)
        test_db.commit()
        return request.id

    return _add


def run(coro):
    """Drive a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


async def wait_until(predicate, timeout=2.0):
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fetch_request(session_factory):
    """Read a request row in a fresh session."""

    def _fetch(request_id):
        db = session_factory()
        try:
            return db.query(StoryRequest).filter(StoryRequest.id == request_id).first()
        finally:
            db.close()

    return _fetch
