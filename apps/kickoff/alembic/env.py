"""
Alembic entry point (run from apps/kickoff: `alembic upgrade head`).

The URL always comes from kickoff.database.db.DATABASE_URL so migrations
and the application can never disagree; alembic.ini leaves it blank.
SQLite cannot ALTER most constraints, so migrations run in batch mode there.
"""

from logging.config import fileConfig
import asyncio
import logging
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context

from kickoff.database.db import Base, DATABASE_URL, is_sqlite_url
from kickoff.database import models  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=is_sqlite_url(DATABASE_URL),
        **kwargs,
    )


def _redacted_url() -> str:
    return DATABASE_URL.rsplit("@", 1)[-1]


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = DATABASE_URL
    connectable = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    except Exception as e:
        logger.error(f"Migration against {_redacted_url()} failed: {e}", exc_info=True)
        raise
    finally:
        await connectable.dispose()
    logger.info(f"Migrations applied to {_redacted_url()}")


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
