"""Tests for the renewal orchestrator — charges, partial fulfillment, postponement, sweeps."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import select

from src.db.order_tables import OrderRow
from src.db.repository import SubscriptionRepository, generate_order_number
from src.db.subscription_tables import SubscriptionBillingEventRow
from src.models.subscription import (
    BillingEventType,
    DeliveryType,
    RenewalOutcome,
    SubscriptionStatus,
    SubscriptionType,
)
from src.services.billing import StripeGateway
from src.services.catalog import SqlCatalog
from src.services.errors import IDEMPOTENCY_CONFLICT, GatewayError
from src.services.renewals import RenewalService, calculate_shipping_cost, renewal_idempotency_key
from tests.conftest import NOW, declined, make_product, make_subscription, make_user, test_engine


async def _load(session, sub_id):
    return await SubscriptionRepository(session).load_for_renewal(sub_id)


async def _events(session, sub_id):
    result = await session.execute(
        select(SubscriptionBillingEventRow)
        .where(SubscriptionBillingEventRow.subscription_id == sub_id)
        .order_by(SubscriptionBillingEventRow.created_at)
    )
    return list(result.scalars().all())


async def _orders(session, sub_id):
    result = await session.execute(
        select(OrderRow).where(OrderRow.subscription_id == sub_id).order_by(OrderRow.created_at)
    )
    return list(result.scalars().all())


class TestShipping:
    def test_costs(self):
        assert calculate_shipping_cost(DeliveryType.STANDARD) == 899
        assert calculate_shipping_cost(DeliveryType.EXPRESS) == 1599
        assert calculate_shipping_cost(DeliveryType.SAME_DAY) == 2999

    def test_unknown_defaults_to_standard(self):
        assert calculate_shipping_cost(None) == 899


class TestOrderNumber:
    def test_format(self):
        number = generate_order_number(NOW)
        prefix, millis, suffix = number.split("-")
        assert prefix == "SUB"
        assert millis == str(int(NOW.timestamp() * 1000))
        assert len(suffix) == 7
        assert suffix.isalnum() and suffix.upper() == suffix


class TestSuccessfulRenewal:
    @pytest.mark.asyncio
    async def test_single_item_charge(self, session, renewals, gateway, notifier):
        """One item at 2999 x 2, standard delivery -> 6897."""
        await make_user(session)
        await make_product(session, "rose", price_cents=2999)
        sub = await make_subscription(session, [("rose", 2)])
        sub_id = sub.id

        outcome = await renewals.process_subscription(await _load(session, sub_id))

        assert outcome == RenewalOutcome.SUCCESS
        assert gateway.charges[0]["amount_cents"] == 6897

        sub = await _load(session, sub_id)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.next_delivery_date == NOW + timedelta(days=7)
        assert sub.last_delivery_date == NOW
        assert sub.last_billing_attempt == NOW
        assert sub.failed_payment_count == 0

        [order] = await _orders(session, sub_id)
        assert order.subtotal_cents == 5998
        assert order.shipping_cents == 899
        assert order.tax_cents == 0 and order.discount_cents == 0
        assert order.total_cents == 6897
        assert order.status == "CONFIRMED"
        assert order.purchase_type == "SUBSCRIPTION"
        assert order.subscription_type == SubscriptionType.RECURRING_WEEKLY
        assert order.shipping_city == "Sydney"
        assert [(i.product_id, i.quantity, i.price_cents) for i in order.items] == [("rose", 2, 2999)]
        [payment] = order.payments
        assert payment.gateway_transaction_id == "pi_test_1"
        assert payment.currency == "AUD"
        assert payment.status == "succeeded"

        [event] = await _events(session, sub_id)
        assert event.event_type == BillingEventType.RENEWAL_SUCCESS
        assert event.amount_cents == 6897
        assert event.order_id == order.id
        assert event.gateway_transaction_id == "pi_test_1"
        assert event.skipped_items is None

        assert notifier.names() == ["renewal_succeeded"]

    @pytest.mark.asyncio
    async def test_charge_metadata_and_idempotency_key(self, session, renewals, gateway):
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)], type=SubscriptionType.RECURRING_MONTHLY)
        expected_key = renewal_idempotency_key(sub, NOW)

        await renewals.process_subscription(await _load(session, sub.id))

        charge = gateway.charges[0]
        assert charge["idempotency_key"] == expected_key == f"renewal:{sub.id}:2026-03-15:1"
        assert charge["metadata"]["subscriptionId"] == sub.id
        assert charge["metadata"]["userId"] == "user-1"
        assert charge["metadata"]["subscriptionType"] == "RECURRING_MONTHLY"
        assert charge["metadata"]["renewalDate"] == "2026-03-15"
        assert charge["description"] == "Flora subscription renewal: RECURRING_MONTHLY"
        assert (await _load(session, sub.id)).next_delivery_date == NOW.replace(month=4)

    @pytest.mark.asyncio
    async def test_express_shipping(self, session, renewals, gateway):
        await make_user(session)
        await make_product(session, "rose", price_cents=1000)
        sub = await make_subscription(session, [("rose", 1)], delivery_type=DeliveryType.EXPRESS)

        await renewals.process_subscription(await _load(session, sub.id))
        assert gateway.charges[0]["amount_cents"] == 1000 + 1599

    @pytest.mark.asyncio
    async def test_partial_fulfillment(self, session, renewals, gateway, notifier):
        """One discontinued item, one available at 1999 -> only 1999 is billed for items."""
        await make_user(session)
        await make_product(session, "old", is_active=False)
        await make_product(session, "tulip", price_cents=1999)
        sub = await make_subscription(session, [("old", 1), ("tulip", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.SUCCESS
        [order] = await _orders(session, sub.id)
        assert order.subtotal_cents == 1999
        assert order.total_cents == 1999 + 899
        assert [i.product_id for i in order.items] == ["tulip"]

        [event] = await _events(session, sub.id)
        assert event.event_type == BillingEventType.RENEWAL_SUCCESS
        assert event.skipped_items == [{
            "product_id": "old",
            "product_name": "Bouquet old",
            "reason": "Product has been discontinued",
        }]

        name, _user, _order, charged, skipped, _next = notifier.sent[0]
        assert name == "renewal_succeeded"
        assert [a.product.id for a in charged] == ["tulip"]
        assert [s.product_id for s in skipped] == ["old"]

    @pytest.mark.asyncio
    async def test_price_change_between_cycles(self, session, renewals, gateway, clock):
        await make_user(session)
        product = await make_product(session, "rose", price_cents=2999)
        sub = await make_subscription(session, [("rose", 1)])
        sub_id = sub.id

        await renewals.process_subscription(await _load(session, sub_id))

        product.price_cents = 3499
        await session.commit()
        clock.now = NOW + timedelta(days=7)
        await renewals.process_subscription(await _load(session, sub_id))

        first, second = await _orders(session, sub_id)
        assert first.items[0].price_cents == 2999
        assert second.items[0].price_cents == 3499
        assert [c["amount_cents"] for c in gateway.charges] == [2999 + 899, 3499 + 899]

    @pytest.mark.asyncio
    async def test_success_resets_retry_state(self, session, renewals):
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(
            session, [("rose", 1)],
            status=SubscriptionStatus.PAYMENT_FAILED,
            failed_payment_count=2,
            next_retry_date=NOW,
        )
        sub.last_billing_error = "declined"
        await session.commit()

        await renewals.process_subscription(await _load(session, sub.id))

        sub = await _load(session, sub.id)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.failed_payment_count == 0
        assert sub.next_retry_date is None
        assert sub.last_billing_error is None

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_change_outcome(self, session, renewals, notifier):
        notifier.fail = True
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.SUCCESS
        assert len(await _orders(session, sub.id)) == 1
        assert (await _load(session, sub.id)).next_delivery_date == NOW + timedelta(days=7)


class TestAllItemsUnavailable:
    @pytest.mark.asyncio
    async def test_postponed_without_charge(self, session, renewals, gateway, notifier):
        await make_user(session)
        await make_product(session, "a", in_stock=False)
        await make_product(session, "b", in_stock=False)
        sub = await make_subscription(session, [("a", 1), ("b", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.SKIPPED
        assert gateway.charges == []
        assert await _orders(session, sub.id) == []

        sub = await _load(session, sub.id)
        assert sub.next_delivery_date == NOW + timedelta(days=7)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.failed_payment_count == 0

        [event] = await _events(session, sub.id)
        assert event.event_type == BillingEventType.SKIPPED_ITEM
        assert {s["reason"] for s in event.skipped_items} == {"Product is currently out of stock"}
        assert notifier.names() == ["renewal_postponed"]

    @pytest.mark.asyncio
    async def test_subscription_without_items_is_postponed(self, session, renewals, gateway):
        await make_user(session)
        sub = await make_subscription(session, [])
        assert await renewals.process_subscription(await _load(session, sub.id)) == RenewalOutcome.SKIPPED
        assert gateway.charges == []

    @pytest.mark.asyncio
    async def test_failed_subscription_waits_for_next_cycle(self, session, renewals):
        await make_user(session)
        await make_product(session, "a", is_active=False)
        sub = await make_subscription(
            session, [("a", 1)],
            status=SubscriptionStatus.PAYMENT_FAILED, failed_payment_count=1, next_retry_date=NOW,
        )

        await renewals.process_subscription(await _load(session, sub.id))

        sub = await _load(session, sub.id)
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_count == 1
        assert sub.next_retry_date == sub.next_delivery_date == NOW + timedelta(days=7)


class TestChargeFailure:
    @pytest.mark.asyncio
    async def test_decline_enters_retry_schedule(self, session, renewals, gateway, notifier):
        gateway.failures.append(declined("insufficient_funds", "Your card has insufficient funds."))
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.FAILED
        sub = await _load(session, sub.id)
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_count == 1
        assert sub.next_retry_date == NOW + timedelta(days=3)
        assert sub.next_delivery_date == NOW
        assert sub.last_billing_error == "Your card has insufficient funds."
        assert await _orders(session, sub.id) == []

        [event] = await _events(session, sub.id)
        assert event.event_type == BillingEventType.RENEWAL_FAILED
        assert event.error_code == "insufficient_funds"
        assert event.order_id is None

        name, _user, attempt, error = notifier.sent[0]
        assert (name, attempt, error) == ("payment_failed", 1, "Your card has insufficient funds.")


class TestMissingPaymentMethod:
    @pytest.mark.asyncio
    async def test_rejected_before_gateway_call(self, session, renewals, gateway, notifier):
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)], payment_method_id=None)

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.FAILED
        assert gateway.charges == []

        sub = await _load(session, sub.id)
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_count == 0
        assert sub.next_retry_date is None
        assert sub.next_delivery_date == NOW

        [event] = await _events(session, sub.id)
        assert event.event_type == BillingEventType.RENEWAL_FAILED
        assert event.error_code == "payment_method_missing"
        assert notifier.names() == ["payment_method_required"]


class TestRenewalSweep:
    @pytest.mark.asyncio
    async def test_selects_only_due_active_subscriptions(self, session, renewals, gateway):
        await make_user(session)
        await make_product(session, "rose")
        due = await make_subscription(session, [("rose", 1)])
        await make_subscription(session, [("rose", 1)], next_delivery_date=NOW + timedelta(days=1))
        await make_subscription(session, [("rose", 1)], status=SubscriptionStatus.PAUSED)
        await make_subscription(session, [("rose", 1)], status=SubscriptionStatus.CANCELLED)
        await make_subscription(session, [("rose", 1)], next_delivery_date=None)

        summary = await renewals.process_due_renewals()

        assert summary.selected == 1
        assert summary.succeeded == 1
        assert [c["metadata"]["subscriptionId"] for c in gateway.charges] == [due.id]

    @pytest.mark.asyncio
    async def test_counts_each_outcome(self, session, renewals, gateway):
        gateway.failures.append(declined())
        await make_user(session)
        await make_product(session, "rose")
        await make_product(session, "gone", is_active=False)
        await make_subscription(session, [("rose", 1)], next_delivery_date=NOW - timedelta(days=2))
        await make_subscription(session, [("rose", 1)], next_delivery_date=NOW - timedelta(days=1))
        await make_subscription(session, [("gone", 1)], next_delivery_date=NOW)

        summary = await renewals.process_due_renewals()

        assert (summary.selected, summary.failed, summary.succeeded, summary.skipped) == (3, 1, 1, 1)
        assert summary.started_at == NOW and summary.completed_at == NOW

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, session, renewals, gateway):
        gateway.failures.append(RuntimeError("boom"))
        await make_user(session)
        await make_product(session, "rose")
        first = await make_subscription(session, [("rose", 1)], next_delivery_date=NOW - timedelta(days=1))
        second = await make_subscription(session, [("rose", 1)], next_delivery_date=NOW)
        first_id, second_id = first.id, second.id

        summary = await renewals.process_due_renewals()

        assert summary.failed == 1
        assert summary.succeeded == 1
        assert summary.errors == [f"{first_id}: boom"]

        first = await _load(session, first_id)
        assert first.status == SubscriptionStatus.ACTIVE
        assert first.failed_payment_count == 0
        assert first.next_delivery_date == NOW - timedelta(days=1)
        assert await _events(session, first_id) == []

        assert len(await _orders(session, second_id)) == 1

    @pytest.mark.asyncio
    async def test_one_event_per_attempt(self, session, renewals, gateway):
        gateway.failures.append(declined())
        await make_user(session)
        await make_product(session, "rose")
        for days in (3, 2, 1):
            await make_subscription(session, [("rose", 1)], next_delivery_date=NOW - timedelta(days=days))

        summary = await renewals.process_due_renewals()

        result = await session.execute(select(SubscriptionBillingEventRow))
        assert len(result.scalars().all()) == summary.selected == 3


class TestReplayedCycle:
    @pytest.mark.asyncio
    async def test_crash_after_charge_is_not_billed_twice(self, session, renewals, gateway, notifier, clock):
        """Charge goes through, the commit never happens, the sweep runs again later."""
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)], next_delivery_date=NOW - timedelta(days=1))
        sub_id = sub.id

        with patch.object(renewals.repo, "create_renewal_order", side_effect=RuntimeError("connection lost")):
            first = await renewals.process_due_renewals()
        assert first.failed == 1
        assert len(gateway.charges) == 1

        clock.now = NOW + timedelta(hours=1)
        second = await renewals.process_due_renewals()

        assert second.succeeded == 1
        assert len(gateway.charges) == 1
        assert gateway.charges[0]["metadata"]["renewalDate"] == "2026-03-14"

        sub = await _load(session, sub_id)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.failed_payment_count == 0
        assert sub.next_delivery_date == NOW + timedelta(days=6)

        [event] = await _events(session, sub_id)
        assert event.event_type == BillingEventType.RENEWAL_SUCCESS
        assert event.gateway_transaction_id == "pi_test_1"
        assert len(await _orders(session, sub_id)) == 1
        assert notifier.names() == ["renewal_succeeded"]

    @pytest.mark.asyncio
    async def test_idempotency_conflict_does_not_consume_a_retry(self, session, renewals, gateway, notifier):
        gateway.failures.append(GatewayError(IDEMPOTENCY_CONFLICT, "Keys for idempotent requests can only be used once."))
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.FAILED
        sub = await _load(session, sub.id)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.failed_payment_count == 0
        assert sub.next_retry_date is None
        assert sub.next_delivery_date == NOW
        assert await _orders(session, sub.id) == []

        [event] = await _events(session, sub.id)
        assert event.event_type == BillingEventType.RENEWAL_FAILED
        assert event.error_code == "idempotency_error"
        assert notifier.sent == []


class TestSlowCollaborators:
    @pytest.mark.asyncio
    async def test_catalog_timeout_skips_only_that_item(self, session, gateway, notifier, clock):
        class PartlySlowCatalog(SqlCatalog):
            async def _fetch(self, lookup_session, product_id):
                if product_id == "slow":
                    await asyncio.sleep(1)
                return await super()._fetch(lookup_session, product_id)

        renewals = RenewalService(
            session=session,
            catalog=PartlySlowCatalog(test_engine, timeout=0.05),
            gateway=gateway,
            notifier=notifier,
            clock=clock,
            currency="aud",
        )
        await make_user(session)
        await make_product(session, "rose", price_cents=1999)
        await make_product(session, "slow")
        sub = await make_subscription(session, [("rose", 1), ("slow", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.SUCCESS
        assert gateway.charges[0]["amount_cents"] == 1999 + 899
        [event] = await _events(session, sub.id)
        assert event.skipped_items[0]["product_id"] == "slow"
        assert event.skipped_items[0]["reason"] == "Error checking product availability"

    @pytest.mark.asyncio
    async def test_gateway_timeout_is_handled_like_a_decline(self, session, notifier, clock):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        renewals = RenewalService(
            session=session,
            catalog=SqlCatalog(test_engine),
            gateway=StripeGateway(
                secret_key="sk_test_123",
                api_base="https://stripe.test/v1",
                currency="aud",
                timeout=5,
                transport=httpx.MockTransport(handler),
            ),
            notifier=notifier,
            clock=clock,
            currency="aud",
        )
        await make_user(session)
        await make_product(session, "rose")
        sub = await make_subscription(session, [("rose", 1)])

        outcome = await renewals.process_subscription(await _load(session, sub.id))

        assert outcome == RenewalOutcome.FAILED
        sub = await _load(session, sub.id)
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_count == 1
        assert sub.next_retry_date == NOW + timedelta(days=3)
        assert await _orders(session, sub.id) == []

        [event] = await _events(session, sub.id)
        assert event.error_code == "timeout"
        name, _user, attempt, _error = notifier.sent[0]
        assert (name, attempt) == ("payment_failed", 1)
