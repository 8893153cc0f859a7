"""Async engine and session factory for the billing worker.

SQLite (aiosqlite) is used for local runs and tests; PostgreSQL (asyncpg) in
production. Sweeps open one session at a time, so the Postgres pool is small.
"""
from __future__ import annotations

import ssl

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import settings

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_url(url: str) -> str:
    """Rewrite a plain database URL to use the async driver."""
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def _postgres_options() -> dict:
    # Managed Postgres endpoints require TLS but present self-signed certs
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return {
        "pool_size": 5,
        "max_overflow": 5,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
        "connect_args": {"ssl": ctx},
    }


DATABASE_URL = async_url(settings.DATABASE_URL)

engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    **({} if DATABASE_URL.startswith("sqlite") else _postgres_options()),
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def is_sqlite() -> bool:
    return DATABASE_URL.startswith("sqlite")
