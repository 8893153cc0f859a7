"""Scheduled billing sweeps using APScheduler.

Two daily cron jobs (UTC):
  - renewals at RENEWAL_SWEEP_HOUR (default 02:00)
  - payment retries at RETRY_SWEEP_HOUR (default 10:00)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config.settings import settings
from src.db.engine import async_session, engine
from src.models.subscription import SweepSummary
from src.services.billing import StripeGateway
from src.services.catalog import SqlCatalog
from src.services.notifications import EmailNotifier
from src.services.renewals import RenewalService
from src.services.retries import RetryService

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


@asynccontextmanager
async def renewal_service() -> AsyncIterator[RenewalService]:
    """Production wiring: one session per sweep, live Stripe and Resend."""
    async with async_session() as session:
        yield RenewalService(
            session=session,
            catalog=SqlCatalog(engine),
            gateway=StripeGateway(),
            notifier=EmailNotifier(),
        )


async def run_renewal_sweep() -> SweepSummary:
    async with renewal_service() as renewals:
        return await renewals.process_due_renewals()


async def run_retry_sweep() -> SweepSummary:
    async with renewal_service() as renewals:
        return await RetryService(renewals).retry_failed_subscriptions()


async def scheduled_renewals():
    logger.info("Scheduled renewal sweep starting...")
    try:
        await run_renewal_sweep()
    except Exception:
        logger.exception("Scheduled renewal sweep failed")


async def scheduled_retries():
    logger.info("Scheduled retry sweep starting...")
    try:
        await run_retry_sweep()
    except Exception:
        logger.exception("Scheduled retry sweep failed")


def start_scheduler(
    renewal_hour: int = settings.RENEWAL_SWEEP_HOUR,
    retry_hour: int = settings.RETRY_SWEEP_HOUR,
):
    """Register both sweeps and start the scheduler on the running event loop."""
    scheduler.add_job(
        scheduled_renewals,
        trigger=CronTrigger(hour=renewal_hour, minute=0, timezone="UTC"),
        id="subscription_renewals",
        name="Daily subscription renewals",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        scheduled_retries,
        trigger=CronTrigger(hour=retry_hour, minute=0, timezone="UTC"),
        id="payment_retries",
        name="Daily failed-payment retries",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started — renewals at {renewal_hour:02d}:00 UTC, retries at {retry_hour:02d}:00 UTC")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
