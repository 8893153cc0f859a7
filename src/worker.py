"""Flora billing worker — long-running process that hosts the daily sweeps.

Run with: python -m src.worker
"""
from __future__ import annotations

import asyncio
import logging
import signal

from src.logging_config import setup_logging
setup_logging()

from config.settings import settings
from src.db.engine import engine, is_sqlite
from src.db.tables import Base
from src.services.scheduler import start_scheduler, stop_scheduler

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        send_default_pii=False,
    )

logger = logging.getLogger(__name__)


def _register_tables():
    # Import all tables so they're registered with Base.metadata
    import src.db.user_tables  # noqa: F401
    import src.db.subscription_tables  # noqa: F401
    import src.db.order_tables  # noqa: F401


async def run_worker():
    from src.startup_checks import validate_settings
    validate_settings()

    _register_tables()
    if is_sqlite():
        # Dev convenience; PostgreSQL is managed by alembic
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ready")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    start_scheduler()
    logger.info("Billing worker running")
    try:
        await stop.wait()
    finally:
        stop_scheduler()
        await engine.dispose()
        logger.info("Billing worker stopped")


if __name__ == "__main__":
    asyncio.run(run_worker())
