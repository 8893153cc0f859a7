"""Billing and subscription exceptions."""
from __future__ import annotations


IDEMPOTENCY_CONFLICT = "idempotency_error"


class BillingError(Exception):
    """Base class for failures talking to the payment gateway."""


class GatewayError(BillingError):
    """The gateway refused or could not complete a request.

    ``code`` is the gateway's machine-readable reason (``card_declined``,
    ``insufficient_funds``, ``timeout``, ``network_error`` ...), ``message``
    the human-readable one that ends up in emails and the billing log.
    """

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self):
        return f"GatewayError(code={self.code!r}, message={self.message!r})"

    @property
    def is_idempotency_conflict(self) -> bool:
        """The idempotency key was already used with different charge parameters."""
        return self.code == IDEMPOTENCY_CONFLICT


class PaymentMethodMissingError(BillingError):
    """No stored customer or payment method to charge off-session."""

    code = "payment_method_missing"

    def __init__(self, message: str = "No payment method on file"):
        super().__init__(message)
        self.message = message


class SubscriptionError(Exception):
    """Base class for user-facing subscription action failures."""


class SubscriptionNotFoundError(SubscriptionError):
    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class InvalidSubscriptionStateError(SubscriptionError):
    """The requested action is not allowed from the subscription's current status."""
