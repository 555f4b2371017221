"""
Engine and session wiring (SQLAlchemy async).

Production runs on PostgreSQL through asyncpg. SQLite through aiosqlite is
accepted for local development and the test suite; its writers serialize
on the database file, so it gets a generous busy timeout instead of a pool.

Environment:
    DATABASE_URL    full URL, wins over the POSTGRES_* parts
    POSTGRES_USER / POSTGRES_PASSWORD / POSTGRES_HOST / POSTGRES_PORT / POSTGRES_DB
    SQL_ECHO        "true" logs every statement
"""

import os
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
from sqlalchemy.orm import DeclarativeBase
from dotenv import load_dotenv

load_dotenv()

POOL_SIZE = 10
POOL_MAX_OVERFLOW = 20
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _postgres_url_from_parts() -> str:
    user = os.getenv("POSTGRES_USER", "kickoff")
    password = os.getenv("POSTGRES_PASSWORD", "kickoff")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    name = os.getenv("POSTGRES_DB", "kickoff")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


DATABASE_URL = os.getenv("DATABASE_URL") or _postgres_url_from_parts()


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def make_engine(url: str, **overrides) -> AsyncEngine:
    """
    Create an async engine with per-backend defaults.

    Keyword overrides are passed to create_async_engine as-is; supplying a
    `poolclass` disables the pool sizing defaults.
    """
    options = {
        "echo": os.getenv("SQL_ECHO", "false").lower() == "true",
        "pool_pre_ping": True,
    }
    if is_sqlite_url(url):
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    elif "poolclass" not in overrides:
        options["pool_size"] = POOL_SIZE
        options["max_overflow"] = POOL_MAX_OVERFLOW
    options.update(overrides)
    return create_async_engine(url, **options)


def session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Sessions keep loaded attributes after commit so services can serialize them."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = make_engine(DATABASE_URL)

# Background workers open their own sessions through this name; tests rebind it
AsyncSessionLocal = session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for every kickoff table."""
    pass


# Registers the tables on Base.metadata; must follow the Base definition
from kickoff.database import models  # noqa: F401, E402


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: one session per request.

    Commits when the route returns normally and rolls back when it raises.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_database():
    """Create any missing tables (development convenience; migrations own production)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
