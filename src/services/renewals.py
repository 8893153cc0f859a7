"""
Subscription renewal orchestration.

One renewal cycle for one subscription:
  1. Validate items against the live catalog
  2. Nothing available -> postpone one cadence step, no charge
  3. Price available items at current prices, add shipping
  4. Charge off-session
     - success: order + subscription update + billing event in one commit
     - gateway failure: hand off to the retry policy
     - no payment method: park the subscription until the customer adds one

The daily sweep runs that cycle over every ACTIVE subscription whose
delivery date has arrived, one at a time. A crash on one subscription is
logged and rolled back; the sweep moves on to the next.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.repository import SubscriptionRepository
from src.db.subscription_tables import SubscriptionRow
from src.db.tables import utcnow
from src.models.subscription import (
    BillingEventType,
    DeliveryType,
    RenewalOutcome,
    SubscriptionStatus,
    SweepSummary,
)
from src.services.billing import BillingGateway
from src.services.cadence import advance_delivery_date
from src.services.catalog import CatalogQuery
from src.services.errors import GatewayError, PaymentMethodMissingError
from src.services.inventory import InventoryValidator
from src.services.notifications import Notifier
from src.services.retry_policy import apply_payment_failure

logger = logging.getLogger(__name__)

SHIPPING_COST_CENTS: dict[DeliveryType, int] = {
    DeliveryType.STANDARD: 899,
    DeliveryType.EXPRESS: 1599,
    DeliveryType.SAME_DAY: 2999,
}
DEFAULT_SHIPPING_CENTS = 899


def calculate_shipping_cost(delivery_type: Optional[DeliveryType]) -> int:
    return SHIPPING_COST_CENTS.get(delivery_type, DEFAULT_SHIPPING_CENTS)


def renewal_cycle_date(subscription: SubscriptionRow, now: datetime) -> str:
    """The delivery date this renewal pays for, as an ISO date."""
    return (subscription.next_delivery_date or now).date().isoformat()


def renewal_idempotency_key(subscription: SubscriptionRow, now: datetime) -> str:
    """Same cycle + same attempt -> same key, so a replayed charge is not billed twice.

    The gateway only replays a key whose request is identical, so every charge
    parameter sent with it must come from the cycle, never from the clock.
    """
    cycle = renewal_cycle_date(subscription, now)
    attempt = (subscription.failed_payment_count or 0) + 1
    return f"renewal:{subscription.id}:{cycle}:{attempt}"


Eligibility = Callable[[SubscriptionRow, datetime], bool]


def due_for_renewal(subscription: SubscriptionRow, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.ACTIVE
        and subscription.next_delivery_date is not None
        and subscription.next_delivery_date <= now
    )


class RenewalService:
    def __init__(
        self,
        session: AsyncSession,
        catalog: CatalogQuery,
        gateway: BillingGateway,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
        currency: Optional[str] = None,
    ):
        self.session = session
        self.repo = SubscriptionRepository(session)
        self.inventory = InventoryValidator(catalog)
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.currency = currency or settings.BILLING_CURRENCY

    # ── Single subscription ──────────────────────────────────────────────────

    async def process_subscription(self, subscription: SubscriptionRow) -> RenewalOutcome:
        """Run one renewal cycle. Expects ``items`` and ``user`` loaded."""
        now = self.clock()
        validation = await self.inventory.validate_subscription_items(subscription.items)

        if not validation.available_items:
            return await self._postpone(subscription, validation.skipped_items, now)

        subtotal = validation.total_cents
        shipping = calculate_shipping_cost(subscription.delivery_type)
        total = subtotal + shipping

        try:
            charge = await self.gateway.charge_off_session(
                customer_id=subscription.gateway_customer_id,
                payment_method_id=subscription.gateway_payment_method_id,
                amount_cents=total,
                metadata={
                    "subscriptionId": subscription.id,
                    "userId": subscription.user_id,
                    "subscriptionType": subscription.type.value,
                    "renewalDate": renewal_cycle_date(subscription, now),
                },
                description=f"Flora subscription renewal: {subscription.type.value}",
                idempotency_key=renewal_idempotency_key(subscription, now),
            )
        except PaymentMethodMissingError as e:
            return await self._park_without_payment_method(subscription, e, total, now)
        except GatewayError as e:
            if e.is_idempotency_conflict:
                return await self._hold_for_reconciliation(subscription, e, total, now)
            return await self._record_payment_failure(subscription, e, total, now)

        order = await self.repo.create_renewal_order(
            subscription,
            validation.available_items,
            subtotal_cents=subtotal,
            shipping_cents=shipping,
            total_cents=total,
            transaction_id=charge.transaction_id,
            currency=self.currency,
            now=now,
        )

        subscription.next_delivery_date = advance_delivery_date(
            subscription.next_delivery_date or now, subscription.type
        )
        subscription.last_delivery_date = now
        subscription.last_billing_attempt = now
        subscription.failed_payment_count = 0
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.last_billing_error = None
        subscription.next_retry_date = None

        await self.repo.record_billing_event(
            subscription.id,
            BillingEventType.RENEWAL_SUCCESS,
            now,
            amount_cents=total,
            gateway_transaction_id=charge.transaction_id,
            order_id=order.id,
            skipped_items=validation.skipped_items,
        )
        await self.session.commit()

        logger.info(
            f"Renewed subscription {subscription.id}: order {order.order_number}, "
            f"{total} cents, {len(validation.skipped_items)} item(s) skipped",
            extra={"subscription_id": subscription.id},
        )
        await self._notify(
            "renewal_succeeded",
            subscription.user, order, validation.available_items,
            validation.skipped_items, subscription.next_delivery_date,
        )
        return RenewalOutcome.SUCCESS

    async def _postpone(self, subscription, skipped_items, now) -> RenewalOutcome:
        next_date = advance_delivery_date(subscription.next_delivery_date or now, subscription.type)
        subscription.next_delivery_date = next_date
        # A subscription mid-retry waits for the next cycle instead of being re-picked daily
        if subscription.status == SubscriptionStatus.PAYMENT_FAILED:
            subscription.next_retry_date = next_date

        await self.repo.record_billing_event(
            subscription.id,
            BillingEventType.SKIPPED_ITEM,
            now,
            skipped_items=skipped_items,
            error_message="All items unavailable",
        )
        await self.session.commit()

        logger.info(
            f"Postponed subscription {subscription.id} to {next_date.date()}: all items unavailable",
            extra={"subscription_id": subscription.id},
        )
        await self._notify("renewal_postponed", subscription.user, skipped_items, next_date)
        return RenewalOutcome.SKIPPED

    async def _record_payment_failure(self, subscription, error: GatewayError, total, now) -> RenewalOutcome:
        decision = apply_payment_failure(subscription, error.message, now)

        await self.repo.record_billing_event(
            subscription.id,
            decision.event_type,
            now,
            amount_cents=total,
            error_code=error.code,
            error_message=error.message,
        )
        await self.session.commit()

        logger.warning(
            f"Payment failed for subscription {subscription.id} "
            f"(attempt {decision.attempt}, {error.code}): {error.message}",
            extra={"subscription_id": subscription.id},
        )
        if decision.expired:
            await self._notify("subscription_expired", subscription.user, error.message)
        else:
            await self._notify("payment_failed", subscription.user, decision.attempt, error.message)
        return RenewalOutcome.FAILED

    async def _hold_for_reconciliation(self, subscription, error: GatewayError, total, now) -> RenewalOutcome:
        """This cycle's key was already used for a different request.

        An earlier attempt may have charged the card, so this is not a decline:
        no retry is consumed and the customer is not told their payment failed.
        The subscription stays due; the event is the trail for reconciliation.
        """
        await self.repo.record_billing_event(
            subscription.id,
            BillingEventType.RENEWAL_FAILED,
            now,
            amount_cents=total,
            error_code=error.code,
            error_message=error.message,
        )
        await self.session.commit()

        logger.error(
            f"Idempotency conflict charging subscription {subscription.id} "
            f"(key {renewal_idempotency_key(subscription, now)}): {error.message}",
            extra={"subscription_id": subscription.id},
        )
        return RenewalOutcome.FAILED

    async def _park_without_payment_method(
        self, subscription, error: PaymentMethodMissingError, total, now,
    ) -> RenewalOutcome:
        """No card on file: nothing was attempted, so no retry is consumed."""
        subscription.status = SubscriptionStatus.PAYMENT_FAILED
        subscription.next_retry_date = None
        subscription.last_billing_attempt = now
        subscription.last_billing_error = error.message

        await self.repo.record_billing_event(
            subscription.id,
            BillingEventType.RENEWAL_FAILED,
            now,
            amount_cents=total,
            error_code=PaymentMethodMissingError.code,
            error_message=error.message,
        )
        await self.session.commit()

        logger.warning(
            f"Subscription {subscription.id} has no payment method on file",
            extra={"subscription_id": subscription.id},
        )
        await self._notify("payment_method_required", subscription.user, subscription)
        return RenewalOutcome.FAILED

    async def _notify(self, event: str, *args) -> None:
        try:
            await getattr(self.notifier, event)(*args)
        except Exception:
            logger.exception(f"Notifier {event} failed; renewal outcome unchanged")

    # ── Sweeps ───────────────────────────────────────────────────────────────

    async def process_due_renewals(self) -> SweepSummary:
        """Renew every ACTIVE subscription whose delivery date has arrived."""
        now = self.clock()
        ids = await self.repo.due_for_renewal_ids(now)
        logger.info(f"Renewal sweep: {len(ids)} subscription(s) due")
        return await self.process_batch("renewals", ids, due_for_renewal)

    async def process_batch(
        self, sweep: str, subscription_ids: Iterable[str], still_eligible: Eligibility,
    ) -> SweepSummary:
        """Process subscriptions one by one; a failure on one never stops the rest."""
        ids = list(subscription_ids)
        summary = SweepSummary(sweep=sweep, selected=len(ids), started_at=self.clock())

        for subscription_id in ids:
            try:
                subscription = await self.repo.load_for_renewal(subscription_id)
                if subscription is None or not still_eligible(subscription, self.clock()):
                    # Changed by the customer since selection
                    logger.info(
                        f"{sweep}: subscription {subscription_id} no longer eligible, skipping",
                        extra={"subscription_id": subscription_id, "sweep": sweep},
                    )
                    continue
                summary.record(await self.process_subscription(subscription))
            except Exception as e:
                logger.exception(
                    f"{sweep}: unexpected error on subscription {subscription_id}",
                    extra={"subscription_id": subscription_id, "sweep": sweep},
                )
                await self.session.rollback()
                summary.failed += 1
                summary.errors.append(f"{subscription_id}: {e}")

        summary.completed_at = self.clock()
        logger.info(
            f"{sweep} sweep complete: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.skipped} skipped of {summary.selected}",
            extra={"sweep": sweep},
        )
        return summary
