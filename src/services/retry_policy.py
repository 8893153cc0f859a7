"""
Failed-payment retry policy.

Attempt 1 and 2 keep the subscription in PAYMENT_FAILED with a retry date
3 and 4 days out; the third consecutive failure expires it. The counter
only moves here (up) and on a successful renewal (back to 0).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.db.subscription_tables import SubscriptionRow
from src.models.subscription import (
    MAX_PAYMENT_ATTEMPTS,
    BillingEventType,
    SubscriptionStatus,
)

# Post-increment attempt number -> days until the next retry
RETRY_DELAYS_DAYS: dict[int, int] = {
    1: 3,
    2: 4,
}


@dataclass(frozen=True)
class RetryDecision:
    attempt: int
    status: SubscriptionStatus
    next_retry_date: Optional[datetime]
    event_type: BillingEventType

    @property
    def expired(self) -> bool:
        return self.status is SubscriptionStatus.EXPIRED


def decide(attempt: int, now: datetime) -> RetryDecision:
    if attempt >= MAX_PAYMENT_ATTEMPTS:
        return RetryDecision(
            attempt=MAX_PAYMENT_ATTEMPTS,
            status=SubscriptionStatus.EXPIRED,
            next_retry_date=None,
            event_type=BillingEventType.SUBSCRIPTION_EXPIRED,
        )
    return RetryDecision(
        attempt=attempt,
        status=SubscriptionStatus.PAYMENT_FAILED,
        next_retry_date=now + timedelta(days=RETRY_DELAYS_DAYS[attempt]),
        event_type=BillingEventType.RENEWAL_FAILED,
    )


def apply_payment_failure(subscription: SubscriptionRow, error_message: str, now: datetime) -> RetryDecision:
    """Record one failed charge on the subscription and return what happened.

    Leaves ``next_delivery_date`` alone: the cycle is still owed.
    """
    decision = decide((subscription.failed_payment_count or 0) + 1, now)

    subscription.failed_payment_count = decision.attempt
    subscription.status = decision.status
    subscription.next_retry_date = decision.next_retry_date
    subscription.last_billing_attempt = now
    subscription.last_billing_error = error_message
    return decision
