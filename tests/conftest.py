import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MODE", "test")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest

from app.core.db.base import Database
from app.core.db.schemas.quiz import QuestionType
from app.modules.quiz.feed import ChangeFeed
from tests.factories import make_quiz, make_user


@pytest.fixture
async def database():
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def session(database):
    async with database.session_maker() as s:
        yield s


@pytest.fixture
def feed():
    return ChangeFeed(queue_size=64)


@pytest.fixture
async def host(session):
    return await make_user(session, "host@example.com")


@pytest.fixture
async def other_user(session):
    return await make_user(session, "someone@example.com")


@pytest.fixture
async def quiz(session, host):
    # Q1 single: B correct; Q2 multi: A and C correct
    return await make_quiz(
        session,
        host,
        [
            (QuestionType.SINGLE, [("A", False), ("B", True), ("C", False)]),
            (QuestionType.MULTI, [("A", True), ("B", False), ("C", True)]),
        ],
    )


@pytest.fixture
def caller():
    """Identity the API sees; tests set ``caller["id"]`` to act as a host."""
    return {"id": None}


@pytest.fixture
async def client(database, feed, caller):
    from main import create_app
    from app.apis.deps import optional_caller_id

    app = create_app()
    app.state.db = database
    app.state.feed = feed
    app.dependency_overrides[optional_caller_id] = lambda: caller["id"]
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
