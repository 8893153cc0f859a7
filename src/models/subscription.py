"""Subscription billing data models — enums and value objects shared by the renewal services."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SubscriptionType(str, Enum):
    RECURRING_WEEKLY = "RECURRING_WEEKLY"
    RECURRING_BIWEEKLY = "RECURRING_BIWEEKLY"
    RECURRING_MONTHLY = "RECURRING_MONTHLY"
    RECURRING_QUARTERLY = "RECURRING_QUARTERLY"
    RECURRING_YEARLY = "RECURRING_YEARLY"
    SPONTANEOUS_WEEKLY = "SPONTANEOUS_WEEKLY"
    SPONTANEOUS_BIWEEKLY = "SPONTANEOUS_BIWEEKLY"
    SPONTANEOUS_MONTHLY = "SPONTANEOUS_MONTHLY"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})

# Third consecutive failed charge expires the subscription
MAX_PAYMENT_ATTEMPTS = 3


class DeliveryType(str, Enum):
    STANDARD = "STANDARD"
    EXPRESS = "EXPRESS"
    SAME_DAY = "SAME_DAY"


class BillingEventType(str, Enum):
    RENEWAL_SUCCESS = "RENEWAL_SUCCESS"
    RENEWAL_FAILED = "RENEWAL_FAILED"
    SKIPPED_ITEM = "SKIPPED_ITEM"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"


class RenewalOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


# ── Catalog / inventory ──────────────────────────────────────────────────────

class ProductSnapshot(BaseModel):
    """What the catalog says about a product right now."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price_cents: int
    is_active: bool
    in_stock: bool
    stock_count: Optional[int] = None


class AvailableItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product: ProductSnapshot
    quantity: int

    @property
    def line_total_cents(self) -> int:
        return self.product.price_cents * self.quantity


class SkippedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    reason: str

class ValidationResult(BaseModel):
    available_items: list[AvailableItem] = []
    skipped_items: list[SkippedItem] = []
    total_cents: int = 0


# ── Gateway results ──────────────────────────────────────────────────────────

class ChargeResult(BaseModel):
    transaction_id: str
    amount_cents: int


class SetupResult(BaseModel):
    customer_id: str
    client_secret: str  # handed to the frontend to finish card collection


# ── Sweep reporting ──────────────────────────────────────────────────────────

class SweepSummary(BaseModel):
    """Counts from one renewal or retry sweep."""
    sweep: str
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = []
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def record(self, outcome: RenewalOutcome) -> None:
        if outcome is RenewalOutcome.SUCCESS:
            self.succeeded += 1
        elif outcome is RenewalOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class RetryStats(BaseModel):
    total_failed: int = 0
    pending_retry: int = 0
    expired_subscriptions: int = 0
    attempt1: int = 0
    attempt2: int = 0
    attempt3: int = 0
