"""Order tables — immutable history of what a renewal actually charged and shipped."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, Integer, Text, ForeignKey, Enum as SAEnum,
)
from sqlalchemy.orm import relationship

from src.db.tables import Base, UTCDateTime, utcnow
from src.models.subscription import DeliveryType, SubscriptionType


class OrderRow(Base):
    """A confirmed order. Renewal orders are created only after the charge succeeded."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Purchase type: ONE_TIME | SUBSCRIPTION
    purchase_type = Column(String(20), nullable=False, default="SUBSCRIPTION")
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    subscription_type = Column(SAEnum(SubscriptionType), nullable=True)

    # Status: CONFIRMED | SHIPPED | DELIVERED | CANCELLED
    status = Column(String(20), nullable=False, default="CONFIRMED")

    # Pricing (cents)
    subtotal_cents = Column(Integer, nullable=False)
    shipping_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)

    # Delivery
    delivery_type = Column(SAEnum(DeliveryType), nullable=False)
    delivery_notes = Column(Text, nullable=True)

    # Shipping snapshot
    shipping_first_name = Column(String(100), nullable=True)
    shipping_last_name = Column(String(100), nullable=True)
    shipping_street1 = Column(String(300), nullable=True)
    shipping_street2 = Column(String(300), nullable=True)
    shipping_city = Column(String(100), nullable=True)
    shipping_state = Column(String(100), nullable=True)
    shipping_zip_code = Column(String(20), nullable=True)
    shipping_country = Column(String(2), nullable=True)
    shipping_phone = Column(String(40), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, index=True)

    items = relationship("OrderItemRow", cascade="all, delete-orphan", lazy="selectin")
    payments = relationship("PaymentRow", cascade="all, delete-orphan", lazy="selectin")


class OrderItemRow(Base):
    """Line item at the price actually charged — not a live catalog reference."""
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    product_name = Column(String(300), nullable=True)
    quantity = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)


class PaymentRow(Base):
    """Captured payment backing an order."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="AUD")
    status = Column(String(20), nullable=False, default="succeeded")
    gateway_transaction_id = Column(String(255), nullable=False, unique=True)
    paid_at = Column(UTCDateTime, default=utcnow)
