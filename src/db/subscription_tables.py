"""Subscription tables — recurring delivery agreements, their items, and the billing audit trail."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, Integer, Text, JSON, CheckConstraint,
    ForeignKey, Index, UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import relationship

from src.db.tables import Base, UTCDateTime, utcnow
from src.db.user_tables import UserRow
from src.models.subscription import (
    BillingEventType, DeliveryType, SubscriptionStatus, SubscriptionType,
)


class SubscriptionRow(Base):
    """Recurring delivery agreement — owned by one user, renewed by the billing sweeps."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(SAEnum(SubscriptionType), nullable=False)
    status = Column(SAEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)

    # Scheduling
    next_delivery_date = Column(UTCDateTime, nullable=True, index=True)
    last_delivery_date = Column(UTCDateTime, nullable=True)

    # Billing / retry bookkeeping
    failed_payment_count = Column(Integer, nullable=False, default=0)
    last_billing_attempt = Column(UTCDateTime, nullable=True)
    last_billing_error = Column(Text, nullable=True)
    next_retry_date = Column(UTCDateTime, nullable=True, index=True)

    # Gateway references (never raw card data)
    gateway_customer_id = Column(String(255), nullable=True, index=True)
    gateway_payment_method_id = Column(String(255), nullable=True)

    # Delivery
    delivery_type = Column(SAEnum(DeliveryType), nullable=False, default=DeliveryType.STANDARD)
    delivery_notes = Column(Text, nullable=True)

    # Shipping address (copied onto each renewal order)
    shipping_first_name = Column(String(100), nullable=True)
    shipping_last_name = Column(String(100), nullable=True)
    shipping_street1 = Column(String(300), nullable=True)
    shipping_street2 = Column(String(300), nullable=True)
    shipping_city = Column(String(100), nullable=True)
    shipping_state = Column(String(100), nullable=True)
    shipping_zip_code = Column(String(20), nullable=True)
    shipping_country = Column(String(2), nullable=True)
    shipping_phone = Column(String(40), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    user = relationship(UserRow, lazy="raise")
    items = relationship(
        "SubscriptionItemRow",
        back_populates="subscription",
        cascade="all, delete-orphan",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(
            "failed_payment_count >= 0 AND failed_payment_count <= 3",
            name="ck_subscriptions_failed_payment_count",
        ),
        Index("ix_subscriptions_status_next_delivery", "status", "next_delivery_date"),
        Index("ix_subscriptions_status_next_retry", "status", "next_retry_date"),
    )

    def __repr__(self):
        return f"<Subscription {self.id} {self.type} status={self.status}>"


class SubscriptionItemRow(Base):
    """One product line on a subscription. No price: renewals use the live catalog price."""
    __tablename__ = "subscription_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id = Column(String(36), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)

    subscription = relationship("SubscriptionRow", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_subscription_items_quantity"),
        UniqueConstraint("subscription_id", "product_id", name="uq_subscription_product"),
    )


class SubscriptionBillingEventRow(Base):
    """Immutable log of every renewal attempt (success, failure, skip, expiry)."""
    __tablename__ = "subscription_billing_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    event_type = Column(SAEnum(BillingEventType), nullable=False, index=True)

    amount_cents = Column(Integer, nullable=True)
    gateway_transaction_id = Column(String(255), nullable=True, unique=True)
    order_id = Column(String(36), nullable=True)

    # [{"product_id", "product_name", "reason"}, ...]
    skipped_items = Column(JSON, nullable=True)

    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
