"""
Customer notifications for subscription billing.

Emails go out through the Resend HTTP API. Sending is best-effort: with no
RESEND_API_KEY the message is logged and dropped, and delivery errors are
logged rather than raised, so a mail outage never changes a renewal outcome.
"""
from __future__ import annotations

import logging
from datetime import datetime
from html import escape
from typing import Optional, Protocol, Sequence

import httpx

from config.settings import settings
from src.models.subscription import MAX_PAYMENT_ATTEMPTS, AvailableItem, SkippedItem
from src.services.retry_policy import RETRY_DELAYS_DAYS

logger = logging.getLogger(__name__)


class NotifiableUser(Protocol):
    id: str
    email: Optional[str]
    first_name: Optional[str]


class Notifier(Protocol):
    async def renewal_succeeded(
        self, user, order, charged_items: Sequence[AvailableItem],
        skipped_items: Sequence[SkippedItem], next_date: Optional[datetime],
    ) -> None: ...

    async def renewal_postponed(
        self, user, skipped_items: Sequence[SkippedItem], next_date: datetime,
    ) -> None: ...

    async def payment_failed(self, user, attempt_number: int, error: str) -> None: ...

    async def subscription_expired(self, user, error: str) -> None: ...

    async def payment_method_required(self, user, subscription) -> None: ...


# ── Rendering ─────────────────────────────────────────────────────────────────

_BUTTON_STYLE = (
    "background: #3b82f6; color: white; padding: 10px 20px; "
    "text-decoration: none; border-radius: 5px; display: inline-block;"
)


def _money(cents: int) -> str:
    return f"${cents / 100:.2f}"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%d %B %Y") if value else "TBD"


def _button(path: str, label: str) -> str:
    return f'<a href="{escape(settings.FRONTEND_URL + path)}" style="{_BUTTON_STYLE}">{escape(label)}</a>'


def _skipped_list(skipped_items: Sequence[SkippedItem]) -> str:
    rows = "".join(
        f"<li>{escape(s.product_name)} - {escape(s.reason)}</li>" for s in skipped_items
    )
    return f"<ul>{rows}</ul>"


def render_renewal_succeeded(order, charged_items, skipped_items, next_date) -> tuple[str, str]:
    items = "".join(
        f"<li>{escape(a.product.name)} × {a.quantity} - {_money(a.product.price_cents)}</li>"
        for a in charged_items
    )
    skipped = ""
    if skipped_items:
        skipped = (
            '<h3 style="color: #f59e0b;">Note: some items were unavailable</h3>'
            + _skipped_list(skipped_items)
        )
    html = f"""
        <h1>Subscription Delivery Confirmed</h1>
        <p><strong>Order Number:</strong> {escape(order.order_number)}</p>
        <p><strong>Amount charged:</strong> {_money(order.total_cents)} {settings.BILLING_CURRENCY.upper()}</p>
        <h3>Items:</h3>
        <ul>{items}</ul>
        {skipped}
        <p><strong>Next delivery:</strong> {_date(next_date)}</p>
        <p>{_button(f"/orders/{order.id}", "View Order")} {_button("/subscriptions", "Manage Subscription")}</p>
    """
    return "Your Flora subscription delivery is confirmed", html


def render_renewal_postponed(skipped_items, next_date) -> tuple[str, str]:
    html = f"""
        <h1>Delivery Postponed</h1>
        <p>All items in your subscription are currently unavailable:</p>
        {_skipped_list(skipped_items)}
        <p>We've rescheduled your delivery to the next cycle: <strong>{_date(next_date)}</strong></p>
        <p>You were not charged for this delivery.</p>
        <p>{_button("/subscriptions", "Manage Subscription")}</p>
    """
    return "Your Flora subscription delivery postponed", html


def render_payment_failed(attempt_number: int, error: str) -> tuple[str, str]:
    days = RETRY_DELAYS_DAYS.get(attempt_number)
    if attempt_number <= 1:
        subject = "Payment issue with your Flora subscription"
        lead = f"<p><strong>We'll automatically retry in {days} days.</strong></p>"
        cta = _button("/subscriptions", "Manage Subscription")
    else:
        subject = "Second attempt: Payment issue with your Flora subscription"
        lead = (
            f"<p><strong>We'll make one final attempt in {days} days.</strong></p>"
            "<p>Please update your payment method to avoid subscription cancellation.</p>"
        )
        cta = _button("/subscriptions", "Update Payment Method")
    html = f"""
        <h1>Payment Issue</h1>
        <p>We couldn't process your subscription payment.</p>
        {lead}
        <p>{cta}</p>
        <p>Error: {escape(error)}</p>
        <p>Attempt: {attempt_number} of {MAX_PAYMENT_ATTEMPTS}</p>
    """
    return subject, html


def render_subscription_expired(error: str) -> tuple[str, str]:
    html = f"""
        <h1>Subscription Cancelled</h1>
        <p>After {MAX_PAYMENT_ATTEMPTS} failed payment attempts, your subscription has been cancelled.</p>
        <p>You can create a new subscription anytime:</p>
        <p>{_button("/products", "Browse Products")}</p>
        <p>Last error: {escape(error)}</p>
    """
    return "Your Flora subscription has been cancelled", html


def render_payment_method_required() -> tuple[str, str]:
    html = f"""
        <h1>Payment Method Needed</h1>
        <p>Your subscription delivery is due, but there is no payment method on file to charge.</p>
        <p>Add a card and we'll pick up your delivery on the next billing run. You have not been charged.</p>
        <p>{_button("/subscriptions", "Add Payment Method")}</p>
    """
    return "Action needed: add a payment method for your Flora subscription", html


# ── Resend ────────────────────────────────────────────────────────────────────

class EmailNotifier:
    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        from_email: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.api_base = (api_base or settings.RESEND_API_BASE).rstrip("/")
        self.from_email = from_email or settings.FROM_EMAIL
        self.timeout = timeout if timeout is not None else settings.EMAIL_TIMEOUT_SECONDS
        self._transport = transport

    async def send_email(self, to: Optional[str], subject: str, html: str) -> bool:
        if not to:
            logger.warning(f"Skipping email '{subject}': recipient has no address")
            return False
        if not self.api_key:
            logger.info(f"[email] RESEND_API_KEY not set; would send '{subject}' to {to}")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.api_base}/emails",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.from_email, "to": [to], "subject": subject, "html": html},
                )
        except httpx.HTTPError as e:
            logger.error(f"[email] Failed to send '{subject}' to {to}: {e!r}")
            return False

        if resp.status_code >= 400:
            logger.error(f"[email] Resend rejected '{subject}' to {to}: {resp.status_code} {resp.text}")
            return False

        logger.info(f"[email] Sent '{subject}' to {to}")
        return True

    async def renewal_succeeded(self, user, order, charged_items, skipped_items, next_date) -> None:
        subject, html = render_renewal_succeeded(order, charged_items, skipped_items, next_date)
        await self.send_email(user.email, subject, html)

    async def renewal_postponed(self, user, skipped_items, next_date) -> None:
        subject, html = render_renewal_postponed(skipped_items, next_date)
        await self.send_email(user.email, subject, html)

    async def payment_failed(self, user, attempt_number: int, error: str) -> None:
        subject, html = render_payment_failed(attempt_number, error)
        await self.send_email(user.email, subject, html)

    async def subscription_expired(self, user, error: str) -> None:
        subject, html = render_subscription_expired(error)
        await self.send_email(user.email, subject, html)

    async def payment_method_required(self, user, subscription) -> None:
        subject, html = render_payment_method_required()
        await self.send_email(user.email, subject, html)
