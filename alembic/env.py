"""Alembic environment for the billing schema.

Migrations run through the same async drivers as the worker (aiosqlite /
asyncpg), so no sync driver is needed.
"""
from __future__ import annotations

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

from config.settings import settings
from src.db.engine import async_url
from src.db.tables import Base

# Table modules register themselves on Base.metadata
import src.db.user_tables  # noqa: F401
import src.db.subscription_tables  # noqa: F401
import src.db.order_tables  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
DATABASE_URL = async_url(settings.DATABASE_URL)


def _configure_and_run(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of touching a database."""
    _configure_and_run(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})


async def run_migrations_online() -> None:
    connectable = create_async_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(lambda conn: _configure_and_run(connection=conn))
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
