"""
Customer-facing subscription actions.

Everything here is scoped to the owning user: a subscription that exists but
belongs to someone else is reported as not found. Status changes follow

    ACTIVE <-> PAUSED
    ACTIVE | PAUSED | PAYMENT_FAILED -> CANCELLED
    CANCELLED, EXPIRED: terminal

Renewal and retry transitions live in src/services/renewals.py and
src/services/retry_policy.py.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repository import SubscriptionRepository
from src.db.subscription_tables import (
    SubscriptionBillingEventRow,
    SubscriptionItemRow,
    SubscriptionRow,
)
from src.db.user_tables import UserRow
from src.models.subscription import TERMINAL_STATUSES, SetupResult, SubscriptionStatus
from src.services.billing import BillingGateway
from src.services.cadence import roll_forward
from src.services.catalog import SqlCatalog
from src.services.errors import InvalidSubscriptionStateError, SubscriptionNotFoundError
from src.services.inventory import InventoryValidator

logger = logging.getLogger(__name__)

ITEM_ACTIONS = ("add", "remove")


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _get_owned(session: AsyncSession, subscription_id: str, user_id: str) -> SubscriptionRow:
    sub = await SubscriptionRepository(session).get_owned(subscription_id, user_id)
    if sub is None:
        raise SubscriptionNotFoundError(subscription_id)
    return sub


def _require_not_terminal(sub: SubscriptionRow, action: str):
    if sub.status in TERMINAL_STATUSES:
        raise InvalidSubscriptionStateError(
            f"Cannot {action} a {sub.status.value.lower()} subscription"
        )


# ── Status changes ────────────────────────────────────────────────────────────

async def pause_subscription(session: AsyncSession, subscription_id: str, user_id: str) -> SubscriptionRow:
    sub = await _get_owned(session, subscription_id, user_id)
    if sub.status != SubscriptionStatus.ACTIVE:
        raise InvalidSubscriptionStateError(f"Only active subscriptions can be paused (status: {sub.status.value})")

    sub.status = SubscriptionStatus.PAUSED
    await session.commit()
    logger.info(f"Subscription {sub.id} paused by user {user_id}", extra={"subscription_id": sub.id})
    return sub


async def resume_subscription(
    session: AsyncSession, subscription_id: str, user_id: str, now: Optional[datetime] = None,
) -> SubscriptionRow:
    """PAUSED -> ACTIVE. Deliveries missed while paused are not billed retroactively."""
    now = now or _now()
    sub = await _get_owned(session, subscription_id, user_id)
    if sub.status != SubscriptionStatus.PAUSED:
        raise InvalidSubscriptionStateError(f"Only paused subscriptions can be resumed (status: {sub.status.value})")

    sub.status = SubscriptionStatus.ACTIVE
    if sub.next_delivery_date is None:
        sub.next_delivery_date = now
    elif sub.next_delivery_date < now:
        sub.next_delivery_date = roll_forward(sub.next_delivery_date, sub.type, now)

    await session.commit()
    logger.info(
        f"Subscription {sub.id} resumed; next delivery {sub.next_delivery_date.date()}",
        extra={"subscription_id": sub.id},
    )
    return sub


async def cancel_subscription(session: AsyncSession, subscription_id: str, user_id: str) -> SubscriptionRow:
    sub = await _get_owned(session, subscription_id, user_id)
    _require_not_terminal(sub, "cancel")

    sub.status = SubscriptionStatus.CANCELLED
    sub.next_retry_date = None
    await session.commit()
    logger.info(f"Subscription {sub.id} cancelled by user {user_id}", extra={"subscription_id": sub.id})
    return sub


# ── Items ─────────────────────────────────────────────────────────────────────

async def modify_subscription_items(
    session: AsyncSession,
    subscription_id: str,
    user_id: str,
    action: str,
    product_id: str,
    quantity: int = 1,
) -> SubscriptionRow:
    """Add (or top up) or remove one product line."""
    if action not in ITEM_ACTIONS:
        raise ValueError('Invalid action. Must be "add" or "remove"')
    if quantity < 1:
        raise ValueError("Quantity must be at least 1")

    sub = await _get_owned(session, subscription_id, user_id)
    _require_not_terminal(sub, "modify")

    existing = next((item for item in sub.items if item.product_id == product_id), None)

    if action == "remove":
        if existing is None:
            raise ValueError(f"Product {product_id} is not in this subscription")
        sub.items.remove(existing)
    else:
        # Temporarily out-of-stock products are fine; renewals skip them per cycle
        _, product, reason = await InventoryValidator(SqlCatalog(session.bind)).check_product_availability(product_id)
        if product is None or not product.is_active:
            raise ValueError(f"Cannot add product {product_id}: {reason}")
        if existing is not None:
            existing.quantity += quantity
        else:
            sub.items.append(SubscriptionItemRow(product_id=product_id, quantity=quantity))

    await session.commit()
    logger.info(
        f"Subscription {sub.id}: {action} {quantity} x {product_id}",
        extra={"subscription_id": sub.id},
    )
    return sub


# ── Payment methods ───────────────────────────────────────────────────────────

async def _get_user(session: AsyncSession, user_id: str) -> UserRow:
    result = await session.execute(select(UserRow).where(UserRow.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise LookupError(f"User not found: {user_id}")
    return user


async def create_setup_intent(session: AsyncSession, gateway: BillingGateway, user_id: str) -> SetupResult:
    """Start card collection for off-session use. Returns the client secret for the frontend."""
    user = await _get_user(session, user_id)
    existing_customer_id = await SubscriptionRepository(session).find_customer_id(user_id)
    return await gateway.prepare_payment_method(user, existing_customer_id)


async def update_payment_method(
    session: AsyncSession,
    gateway: BillingGateway,
    subscription_id: str,
    user_id: str,
    payment_method_id: str,
    now: Optional[datetime] = None,
) -> SubscriptionRow:
    """Store a new card on the subscription.

    A subscription stuck in PAYMENT_FAILED becomes due for the next retry
    sweep. The failure counter is left alone.
    """
    if not payment_method_id:
        raise ValueError("Payment method ID required")
    now = now or _now()

    sub = await _get_owned(session, subscription_id, user_id)
    _require_not_terminal(sub, "update")

    existing_customer_id = sub.gateway_customer_id or await SubscriptionRepository(session).find_customer_id(user_id)
    customer_id = await gateway.attach_payment_method(sub.user, payment_method_id, existing_customer_id)

    sub.gateway_customer_id = customer_id
    sub.gateway_payment_method_id = payment_method_id
    if sub.status == SubscriptionStatus.PAYMENT_FAILED:
        sub.next_retry_date = now

    await session.commit()
    logger.info(f"Subscription {sub.id}: payment method updated", extra={"subscription_id": sub.id})
    return sub


# ── History ───────────────────────────────────────────────────────────────────

async def get_billing_history(
    session: AsyncSession, subscription_id: str, user_id: str, limit: int = 50,
) -> list[SubscriptionBillingEventRow]:
    """Billing events, newest first."""
    await _get_owned(session, subscription_id, user_id)
    return await SubscriptionRepository(session).billing_history(subscription_id, limit=limit)
