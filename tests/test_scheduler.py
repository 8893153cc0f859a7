"""Tests for sweep scheduling and production wiring."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from src.services import scheduler as sched
from src.services.billing import StripeGateway
from src.services.catalog import SqlCatalog
from src.services.notifications import EmailNotifier
from tests.conftest import TestSession, test_engine


@pytest.mark.asyncio
async def test_both_sweeps_registered_daily():
    try:
        sched.start_scheduler(renewal_hour=2, retry_hour=10)
        jobs = {job.id: job for job in sched.scheduler.get_jobs()}

        assert set(jobs) == {"subscription_renewals", "payment_retries"}
        assert str(jobs["subscription_renewals"].trigger.fields[5]) == "2"  # hour
        assert str(jobs["payment_retries"].trigger.fields[5]) == "10"
        assert jobs["subscription_renewals"].max_instances == 1
        assert jobs["payment_retries"].coalesce is True
    finally:
        sched.stop_scheduler()


@pytest.mark.asyncio
async def test_renewal_service_uses_live_collaborators():
    with patch.object(sched, "async_session", TestSession), patch.object(sched, "engine", test_engine):
        async with sched.renewal_service() as renewals:
            assert isinstance(renewals.gateway, StripeGateway)
            assert isinstance(renewals.notifier, EmailNotifier)
            assert isinstance(renewals.inventory.catalog, SqlCatalog)


@pytest.mark.asyncio
async def test_sweeps_on_empty_database():
    with patch.object(sched, "async_session", TestSession), patch.object(sched, "engine", test_engine):
        renewal_summary = await sched.run_renewal_sweep()
        retry_summary = await sched.run_retry_sweep()

    assert (renewal_summary.sweep, renewal_summary.selected) == ("renewals", 0)
    assert (retry_summary.sweep, retry_summary.selected) == ("retries", 0)


@pytest.mark.asyncio
async def test_scheduled_job_swallows_errors():
    with patch.object(sched, "run_renewal_sweep", side_effect=RuntimeError("db down")):
        await sched.scheduled_renewals()
