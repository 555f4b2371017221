"""
Shared pytest configuration for kickoff tests.

Defaults to a file-backed SQLite database (aiosqlite) so the suite runs
without services; set TEST_DATABASE_URL to a PostgreSQL test database to
run against production's engine.

SAFETY: This module REFUSES to run against any database whose name does not
contain the substring "test".
"""

import os

# Must be set before kickoff modules are imported (module-level config)
os.environ.setdefault("ENV", "test")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+aiosqlite:///./kickoff_test.db")
os.environ.setdefault("DATABASE_URL", os.environ["TEST_DATABASE_URL"])

import asyncio  # noqa: E402
from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from kickoff.database import db  # noqa: E402
from kickoff.database.db import Base  # noqa: E402
from kickoff.database.models import User  # noqa: E402
from kickoff.services import field_service, game_service, notification_service, push_service  # noqa: E402
from kickoff.utils.datetime_utils import utcnow  # noqa: E402


def _resolve_test_database_url() -> str:
    """Return TEST_DATABASE_URL, refusing anything that is not a test database."""
    url = os.environ["TEST_DATABASE_URL"]
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../kickoff_test\n"
            f"{'=' * 70}"
        )
    return url


TEST_DATABASE_URL = _resolve_test_database_url()


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh schema per test; db.AsyncSessionLocal is pointed at it."""
    # NullPool avoids "Future attached to different loop" across tests
    engine = db.make_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Background work (notification fan-out, completion worker) opens its own
    # sessions through db.AsyncSessionLocal
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = db.session_factory(engine)

    yield engine

    await notification_service.drain_background_tasks()
    db.AsyncSessionLocal = original_async_session_local

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(test_engine):
    """Factory for additional independent sessions (concurrency tests)."""
    return db.session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_push_transport():
    """No real push provider in tests; individual tests install fakes."""
    push_service.set_push_transport(None)
    yield
    push_service.set_push_transport(None)


class FakePushTransport(push_service.PushTransport):
    """Records sends; tokens listed in `invalid` or `transient` fail accordingly."""

    def __init__(self, invalid=(), transient=(), delay=0.0):
        self.invalid = set(invalid)
        self.transient = set(transient)
        self.delay = delay
        self.sent = []

    async def send(self, token, title, body, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if token in self.invalid:
            raise push_service.InvalidPushTokenError("Requested entity was not found.")
        if token in self.transient:
            raise push_service.TransientPushError("Service unavailable")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        return f"projects/test/messages/{len(self.sent)}"


@pytest.fixture
def fake_push():
    transport = FakePushTransport()
    push_service.set_push_transport(transport)
    return transport


async def create_user(session, user_id, display_name=None):
    user = User(id=user_id, display_name=display_name)
    session.add(user)
    await session.commit()
    return user


@pytest_asyncio.fixture
async def users(db_session):
    """Organizer plus three players."""
    await create_user(db_session, "organizer-1", "Olivia Organizer")
    await create_user(db_session, "player-a", "Alex")
    await create_user(db_session, "player-b", "Blake")
    await create_user(db_session, "player-c", "Casey")
    return {"organizer": "organizer-1", "a": "player-a", "b": "player-b", "c": "player-c"}


@pytest_asyncio.fixture
async def field(db_session):
    return await field_service.create_field(
        db_session,
        name="Riverside Pitch",
        address="1 River Road",
        latitude=52.5200,
        longitude=13.4050,
        opening_time="08:00",
        closing_time="22:00",
        base_price_per_hour=60.0,
        amenities={"parking": True},
    )


async def make_game(session, organizer_id, field_id, total_spots=10, starts_in_hours=24, **kwargs):
    start = utcnow() + timedelta(hours=starts_in_hours)
    return await game_service.create_game(
        session,
        organizer_id=organizer_id,
        field_id=field_id,
        game_type=kwargs.pop("game_type", 5),
        game_level=kwargs.pop("game_level", 3),
        start_time=start,
        end_time=start + timedelta(hours=kwargs.pop("duration_hours", 1)),
        total_spots=total_spots,
        **kwargs,
    )


@pytest_asyncio.fixture
async def game(db_session, users, field):
    return await make_game(db_session, users["organizer"], field["id"], total_spots=3)
