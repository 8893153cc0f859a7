"""Failed-payment retry sweep and retry monitoring."""
from __future__ import annotations

import logging
from datetime import datetime

from src.db.subscription_tables import SubscriptionRow
from src.models.subscription import (
    MAX_PAYMENT_ATTEMPTS,
    RetryStats,
    SubscriptionStatus,
    SweepSummary,
)
from src.services.renewals import RenewalService

logger = logging.getLogger(__name__)


def due_for_retry(subscription: SubscriptionRow, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.PAYMENT_FAILED
        and subscription.next_retry_date is not None
        and subscription.next_retry_date <= now
        and (subscription.failed_payment_count or 0) < MAX_PAYMENT_ATTEMPTS
    )


class RetryService:
    """Re-runs the renewal cycle for subscriptions whose retry date has arrived."""

    def __init__(self, renewals: RenewalService):
        self.renewals = renewals
        self.repo = renewals.repo

    async def retry_failed_subscriptions(self) -> SweepSummary:
        now = self.renewals.clock()
        ids = await self.repo.due_for_retry_ids(now)
        logger.info(f"Retry sweep: {len(ids)} subscription(s) due for retry")
        return await self.renewals.process_batch("retries", ids, due_for_retry)

    async def get_retry_stats(self) -> RetryStats:
        stats = await self.repo.retry_stats()
        logger.debug(f"Retry stats: {stats}")
        return stats
