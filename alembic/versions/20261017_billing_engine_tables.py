"""Create catalog, subscription, billing event and order tables.

Revision ID: 5f0c1b7a9e21
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = "5f0c1b7a9e21"
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_TYPES = (
    "RECURRING_WEEKLY", "RECURRING_BIWEEKLY", "RECURRING_MONTHLY", "RECURRING_QUARTERLY",
    "RECURRING_YEARLY", "SPONTANEOUS_WEEKLY", "SPONTANEOUS_BIWEEKLY", "SPONTANEOUS_MONTHLY",
)
SUBSCRIPTION_STATUSES = ("ACTIVE", "PAUSED", "PAYMENT_FAILED", "CANCELLED", "EXPIRED")
DELIVERY_TYPES = ("STANDARD", "EXPRESS", "SAME_DAY")
BILLING_EVENT_TYPES = ("RENEWAL_SUCCESS", "RENEWAL_FAILED", "SKIPPED_ITEM", "SUBSCRIPTION_EXPIRED")


def _shipping_columns():
    return [
        sa.Column("shipping_first_name", sa.String(100), nullable=True),
        sa.Column("shipping_last_name", sa.String(100), nullable=True),
        sa.Column("shipping_street1", sa.String(300), nullable=True),
        sa.Column("shipping_street2", sa.String(300), nullable=True),
        sa.Column("shipping_city", sa.String(100), nullable=True),
        sa.Column("shipping_state", sa.String(100), nullable=True),
        sa.Column("shipping_zip_code", sa.String(20), nullable=True),
        sa.Column("shipping_country", sa.String(2), nullable=True),
        sa.Column("shipping_phone", sa.String(40), nullable=True),
    ]


def upgrade() -> None:
    subscription_type = sa.Enum(*SUBSCRIPTION_TYPES, name="subscriptiontype")
    delivery_type = sa.Enum(*DELIVERY_TYPES, name="deliverytype")

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True, unique=True, index=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("phone", sa.String(40), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("price_cents", sa.Integer, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("in_stock", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("stock_count", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_products_active_stock", "products", ["is_active", "in_stock"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("type", subscription_type, nullable=False),
        sa.Column("status", sa.Enum(*SUBSCRIPTION_STATUSES, name="subscriptionstatus"), nullable=False, index=True),
        sa.Column("next_delivery_date", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("last_delivery_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_payment_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_billing_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_billing_error", sa.Text, nullable=True),
        sa.Column("next_retry_date", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("gateway_customer_id", sa.String(255), nullable=True, index=True),
        sa.Column("gateway_payment_method_id", sa.String(255), nullable=True),
        sa.Column("delivery_type", delivery_type, nullable=False),
        sa.Column("delivery_notes", sa.Text, nullable=True),
        *_shipping_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "failed_payment_count >= 0 AND failed_payment_count <= 3",
            name="ck_subscriptions_failed_payment_count",
        ),
    )
    op.create_index("ix_subscriptions_status_next_delivery", "subscriptions", ["status", "next_delivery_date"])
    op.create_index("ix_subscriptions_status_next_retry", "subscriptions", ["status", "next_retry_date"])

    op.create_table(
        "subscription_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "subscription_id", sa.String(36),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column("product_id", sa.String(36), nullable=False, index=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.CheckConstraint("quantity >= 1", name="ck_subscription_items_quantity"),
        sa.UniqueConstraint("subscription_id", "product_id", name="uq_subscription_product"),
    )

    op.create_table(
        "subscription_billing_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "subscription_id", sa.String(36),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column("event_type", sa.Enum(*BILLING_EVENT_TYPES, name="billingeventtype"), nullable=False, index=True),
        sa.Column("amount_cents", sa.Integer, nullable=True),
        sa.Column("gateway_transaction_id", sa.String(255), nullable=True, unique=True),
        sa.Column("order_id", sa.String(36), nullable=True),
        sa.Column("skipped_items", sa.JSON, nullable=True),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_number", sa.String(40), nullable=False, unique=True, index=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True),
        sa.Column("purchase_type", sa.String(20), nullable=False, server_default="SUBSCRIPTION"),
        sa.Column(
            "subscription_id", sa.String(36),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column("subscription_type", subscription_type, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="CONFIRMED"),
        sa.Column("subtotal_cents", sa.Integer, nullable=False),
        sa.Column("shipping_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tax_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("discount_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer, nullable=False),
        sa.Column("delivery_type", delivery_type, nullable=False),
        sa.Column("delivery_notes", sa.Text, nullable=True),
        *_shipping_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True), index=True),
    )
    op.create_table(
        "order_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("product_id", sa.String(36), nullable=False),
        sa.Column("product_name", sa.String(300), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("price_cents", sa.Integer, nullable=False),
    )
    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="AUD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="succeeded"),
        sa.Column("gateway_transaction_id", sa.String(255), nullable=False, unique=True),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("subscription_billing_events")
    op.drop_table("subscription_items")
    op.drop_table("subscriptions")
    op.drop_table("products")
    op.drop_table("users")
    for enum_name in ("billingeventtype", "deliverytype", "subscriptionstatus", "subscriptiontype"):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
