"""Subscription repository — sweep selection, renewal orders, and the billing event ledger."""
from __future__ import annotations

import secrets
import string
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.db.order_tables import OrderRow, OrderItemRow, PaymentRow
from src.db.subscription_tables import SubscriptionRow, SubscriptionBillingEventRow
from src.models.subscription import (
    MAX_PAYMENT_ATTEMPTS,
    AvailableItem,
    BillingEventType,
    RetryStats,
    SkippedItem,
    SubscriptionStatus,
)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: datetime) -> str:
    """SUB-<epoch ms>-<7 random chars>, e.g. SUB-1766000000000-K3J9QXA."""
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(7))
    return f"SUB-{int(now.timestamp() * 1000)}-{suffix}"


def _skipped_payload(skipped_items: list[SkippedItem]) -> list[dict] | None:
    return [s.model_dump() for s in skipped_items] if skipped_items else None


class SubscriptionRepository:
    """Async subscription persistence backed by SQLAlchemy."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Sweep selection ──────────────────────────────────────────────────────

    async def due_for_renewal_ids(self, now: datetime) -> list[str]:
        """ACTIVE subscriptions whose next delivery date has arrived."""
        stmt = (
            select(SubscriptionRow.id)
            .where(
                SubscriptionRow.status == SubscriptionStatus.ACTIVE,
                SubscriptionRow.next_delivery_date <= now,
            )
            .order_by(SubscriptionRow.next_delivery_date.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def due_for_retry_ids(self, now: datetime) -> list[str]:
        """PAYMENT_FAILED subscriptions whose retry date has arrived and still have attempts left."""
        stmt = (
            select(SubscriptionRow.id)
            .where(
                SubscriptionRow.status == SubscriptionStatus.PAYMENT_FAILED,
                SubscriptionRow.next_retry_date <= now,
                SubscriptionRow.failed_payment_count < MAX_PAYMENT_ATTEMPTS,
            )
            .order_by(SubscriptionRow.next_retry_date.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ── Loading ──────────────────────────────────────────────────────────────

    async def load_for_renewal(self, subscription_id: str) -> Optional[SubscriptionRow]:
        """Fresh copy of a subscription with its items and owner loaded."""
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.id == subscription_id)
            .options(selectinload(SubscriptionRow.items), selectinload(SubscriptionRow.user))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_owned(self, subscription_id: str, user_id: str) -> Optional[SubscriptionRow]:
        """Subscription with items and owner, only if it belongs to user_id."""
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.id == subscription_id, SubscriptionRow.user_id == user_id)
            .options(selectinload(SubscriptionRow.items), selectinload(SubscriptionRow.user))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_customer_id(self, user_id: str) -> Optional[str]:
        """Gateway customer id already on file from any of the user's subscriptions."""
        stmt = (
            select(SubscriptionRow.gateway_customer_id)
            .where(
                SubscriptionRow.user_id == user_id,
                SubscriptionRow.gateway_customer_id.is_not(None),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ── Writes ───────────────────────────────────────────────────────────────

    async def create_renewal_order(
        self,
        subscription: SubscriptionRow,
        available_items: list[AvailableItem],
        subtotal_cents: int,
        shipping_cents: int,
        total_cents: int,
        transaction_id: str,
        currency: str,
        now: datetime,
    ) -> OrderRow:
        """Snapshot a successful renewal: charged items, shipping address, payment."""
        order = OrderRow(
            order_number=generate_order_number(now),
            user_id=subscription.user_id,
            purchase_type="SUBSCRIPTION",
            subscription_id=subscription.id,
            subscription_type=subscription.type,
            status="CONFIRMED",
            subtotal_cents=subtotal_cents,
            shipping_cents=shipping_cents,
            tax_cents=0,
            discount_cents=0,
            total_cents=total_cents,
            delivery_type=subscription.delivery_type,
            delivery_notes=subscription.delivery_notes,
            shipping_first_name=subscription.shipping_first_name,
            shipping_last_name=subscription.shipping_last_name,
            shipping_street1=subscription.shipping_street1,
            shipping_street2=subscription.shipping_street2,
            shipping_city=subscription.shipping_city,
            shipping_state=subscription.shipping_state,
            shipping_zip_code=subscription.shipping_zip_code,
            shipping_country=subscription.shipping_country,
            shipping_phone=subscription.shipping_phone,
            created_at=now,
            items=[
                OrderItemRow(
                    product_id=available.product.id,
                    product_name=available.product.name,
                    quantity=available.quantity,
                    price_cents=available.product.price_cents,
                )
                for available in available_items
            ],
            payments=[
                PaymentRow(
                    amount_cents=total_cents,
                    currency=currency.upper(),
                    status="succeeded",
                    gateway_transaction_id=transaction_id,
                    paid_at=now,
                )
            ],
        )
        self.session.add(order)
        await self.session.flush()
        return order

    async def record_billing_event(
        self,
        subscription_id: str,
        event_type: BillingEventType,
        now: datetime,
        *,
        amount_cents: int | None = None,
        gateway_transaction_id: str | None = None,
        order_id: str | None = None,
        skipped_items: list[SkippedItem] | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> SubscriptionBillingEventRow:
        """Append one immutable billing event."""
        event = SubscriptionBillingEventRow(
            subscription_id=subscription_id,
            event_type=event_type,
            amount_cents=amount_cents,
            gateway_transaction_id=gateway_transaction_id,
            order_id=order_id,
            skipped_items=_skipped_payload(skipped_items or []),
            error_code=error_code,
            error_message=error_message,
            created_at=now,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    # ── Reads for users / operators ──────────────────────────────────────────

    async def billing_history(self, subscription_id: str, limit: int = 50) -> list[SubscriptionBillingEventRow]:
        stmt = (
            select(SubscriptionBillingEventRow)
            .where(SubscriptionBillingEventRow.subscription_id == subscription_id)
            .order_by(SubscriptionBillingEventRow.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def retry_stats(self) -> RetryStats:
        async def _count(*conditions) -> int:
            result = await self.session.execute(
                select(func.count(SubscriptionRow.id)).where(*conditions)
            )
            return result.scalar_one()

        failed = SubscriptionRow.status == SubscriptionStatus.PAYMENT_FAILED
        return RetryStats(
            total_failed=await _count(failed),
            pending_retry=await _count(failed, SubscriptionRow.next_retry_date.is_not(None)),
            expired_subscriptions=await _count(SubscriptionRow.status == SubscriptionStatus.EXPIRED),
            attempt1=await _count(failed, SubscriptionRow.failed_payment_count == 1),
            attempt2=await _count(failed, SubscriptionRow.failed_payment_count == 2),
            attempt3=await _count(failed, SubscriptionRow.failed_payment_count == 3),
        )
