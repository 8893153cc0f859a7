"""Shared test fixtures — single in-memory test DB for all test modules."""
from __future__ import annotations

from datetime import datetime, timezone
from itertools import count
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

# Shared in-memory DB; StaticPool so every connection sees the same database.
from sqlalchemy.pool import StaticPool

from src.db.tables import Base, ProductRow
from src.db.user_tables import UserRow
from src.db.subscription_tables import SubscriptionRow, SubscriptionItemRow
import src.db.order_tables  # noqa: F401
from src.models.subscription import (
    ChargeResult,
    DeliveryType,
    SetupResult,
    SubscriptionStatus,
    SubscriptionType,
)
from src.services.catalog import SqlCatalog
from src.services.errors import IDEMPOTENCY_CONFLICT, GatewayError, PaymentMethodMissingError
from src.services.renewals import RenewalService

TEST_DB_URL = "sqlite+aiosqlite:///file:billing_test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)

NOW = datetime(2026, 3, 15, 2, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeGateway:
    """In-process BillingGateway. Queue exceptions in ``failures`` to make charges fail.

    Idempotency keys behave like Stripe's: a repeat of a successful request
    replays the original charge, a repeat with different parameters is
    rejected with ``idempotency_error``.
    """

    currency = "aud"

    def __init__(self):
        self.charges: list[dict] = []
        self.failures: list[Exception] = []
        self.setups: list[tuple] = []
        self.attached: list[tuple] = []
        self._ids = count(1)
        self._by_key: dict[str, tuple[dict, ChargeResult]] = {}

    async def charge_off_session(
        self, customer_id, payment_method_id, amount_cents, metadata,
        description=None, idempotency_key=None,
    ):
        if not customer_id or not payment_method_id:
            raise PaymentMethodMissingError()
        request = {
            "customer_id": customer_id,
            "payment_method_id": payment_method_id,
            "amount_cents": amount_cents,
            "metadata": dict(metadata),
            "description": description,
        }
        if idempotency_key in self._by_key:
            first_request, result = self._by_key[idempotency_key]
            if first_request != request:
                raise GatewayError(
                    IDEMPOTENCY_CONFLICT,
                    "Keys for idempotent requests can only be used with the same parameters they were first used with.",
                )
            return result

        self.charges.append({**request, "idempotency_key": idempotency_key})
        if self.failures:
            raise self.failures.pop(0)
        result = ChargeResult(transaction_id=f"pi_test_{next(self._ids)}", amount_cents=amount_cents)
        if idempotency_key:
            self._by_key[idempotency_key] = (request, result)
        return result

    async def prepare_payment_method(self, user, existing_customer_id=None):
        self.setups.append((user.id, existing_customer_id))
        return SetupResult(customer_id=existing_customer_id or f"cus_new_{user.id}", client_secret="seti_secret_123")

    async def attach_payment_method(self, user, payment_method_id, existing_customer_id=None):
        customer_id = existing_customer_id or f"cus_new_{user.id}"
        self.attached.append((user.id, payment_method_id, customer_id))
        return customer_id


class FakeNotifier:
    """Records every notification; set ``fail = True`` to make each call raise."""

    def __init__(self):
        self.sent: list[tuple] = []
        self.fail = False

    def _record(self, name, *args):
        self.sent.append((name, *args))
        if self.fail:
            raise RuntimeError("mail server down")

    def names(self) -> list[str]:
        return [s[0] for s in self.sent]

    async def renewal_succeeded(self, user, order, charged_items, skipped_items, next_date):
        self._record("renewal_succeeded", user, order, charged_items, skipped_items, next_date)

    async def renewal_postponed(self, user, skipped_items, next_date):
        self._record("renewal_postponed", user, skipped_items, next_date)

    async def payment_failed(self, user, attempt_number, error):
        self._record("payment_failed", user, attempt_number, error)

    async def subscription_expired(self, user, error):
        self._record("subscription_expired", user, error)

    async def payment_method_required(self, user, subscription):
        self._record("payment_method_required", user, subscription)


class Clock:
    """Settable clock for time-travel across retry sweeps."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def declined(code: str = "card_declined", message: str = "Your card was declined.") -> GatewayError:
    return GatewayError(code, message)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def renewals(session, gateway, notifier, clock):
    return RenewalService(
        session=session,
        catalog=SqlCatalog(test_engine),
        gateway=gateway,
        notifier=notifier,
        clock=clock,
        currency="aud",
    )


# ── Factories ─────────────────────────────────────────────────────────────────

async def make_user(session: AsyncSession, user_id: str = "user-1", email: str = "ana@example.com") -> UserRow:
    user = UserRow(id=user_id, email=email, first_name="Ana", last_name="Silva", phone="+61400000000")
    session.add(user)
    await session.commit()
    return user


async def make_product(
    session: AsyncSession,
    product_id: str,
    price_cents: int = 2999,
    name: Optional[str] = None,
    is_active: bool = True,
    in_stock: bool = True,
    stock_count: Optional[int] = None,
) -> ProductRow:
    product = ProductRow(
        id=product_id,
        name=name or f"Bouquet {product_id}",
        price_cents=price_cents,
        is_active=is_active,
        in_stock=in_stock,
        stock_count=stock_count,
    )
    session.add(product)
    await session.commit()
    return product


async def make_subscription(
    session: AsyncSession,
    items: list[tuple[str, int]],
    user_id: str = "user-1",
    subscription_id: Optional[str] = None,
    type: SubscriptionType = SubscriptionType.RECURRING_WEEKLY,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    next_delivery_date: Optional[datetime] = NOW,
    delivery_type: DeliveryType = DeliveryType.STANDARD,
    customer_id: Optional[str] = "cus_123",
    payment_method_id: Optional[str] = "pm_123",
    failed_payment_count: int = 0,
    next_retry_date: Optional[datetime] = None,
) -> SubscriptionRow:
    sub = SubscriptionRow(
        user_id=user_id,
        type=type,
        status=status,
        next_delivery_date=next_delivery_date,
        delivery_type=delivery_type,
        gateway_customer_id=customer_id,
        gateway_payment_method_id=payment_method_id,
        failed_payment_count=failed_payment_count,
        next_retry_date=next_retry_date,
        shipping_first_name="Ana",
        shipping_last_name="Silva",
        shipping_street1="1 George St",
        shipping_city="Sydney",
        shipping_state="NSW",
        shipping_zip_code="2000",
        shipping_country="AU",
        items=[SubscriptionItemRow(product_id=pid, quantity=qty) for pid, qty in items],
    )
    if subscription_id:
        sub.id = subscription_id
    session.add(sub)
    await session.commit()
    return sub
