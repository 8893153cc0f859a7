"""Delivery cadence: how far one completed cycle moves ``next_delivery_date``."""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.models.subscription import SubscriptionType


@dataclass(frozen=True)
class CadenceStep:
    days: int = 0
    months: int = 0


CADENCE_STEPS: dict[SubscriptionType, CadenceStep] = {
    SubscriptionType.RECURRING_WEEKLY: CadenceStep(days=7),
    SubscriptionType.RECURRING_BIWEEKLY: CadenceStep(days=14),
    SubscriptionType.RECURRING_MONTHLY: CadenceStep(months=1),
    SubscriptionType.RECURRING_QUARTERLY: CadenceStep(months=3),
    SubscriptionType.RECURRING_YEARLY: CadenceStep(months=12),
    # Spontaneous plans are re-evaluated weekly whatever their nominal period
    SubscriptionType.SPONTANEOUS_WEEKLY: CadenceStep(days=7),
    SubscriptionType.SPONTANEOUS_BIWEEKLY: CadenceStep(days=7),
    SubscriptionType.SPONTANEOUS_MONTHLY: CadenceStep(days=7),
}

_missing = set(SubscriptionType) - set(CADENCE_STEPS)
if _missing:
    raise RuntimeError(f"No cadence step for subscription types: {sorted(t.value for t in _missing)}")


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition, clamped to the last day of the target month.

    Jan 31 + 1 month -> Feb 28 (or 29). Time of day and tzinfo are kept.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_delivery_date(current: datetime, subscription_type: SubscriptionType) -> datetime:
    """One cadence step after ``current``."""
    step = CADENCE_STEPS[SubscriptionType(subscription_type)]
    if step.months:
        return add_months(current, step.months)
    return current + timedelta(days=step.days)


def roll_forward(current: datetime, subscription_type: SubscriptionType, now: datetime) -> datetime:
    """Advance by whole steps until the date is no longer in the past."""
    value = current
    while value < now:
        value = advance_delivery_date(value, subscription_type)
    return value
