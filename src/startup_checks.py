"""Startup validation — catch misconfigurations before the worker starts charging."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: a production worker without a Stripe key would fail every renewal
    if is_prod and not settings.STRIPE_SECRET_KEY:
        logger.critical("STRIPE_SECRET_KEY is not set! Renewals cannot be charged.")
        sys.exit(1)

    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY not set — off-session charges will fail")

    if is_prod and settings.STRIPE_SECRET_KEY.startswith("sk_test_"):
        warnings.append("Using a Stripe test key against a production database")

    if not settings.RESEND_API_KEY:
        warnings.append("RESEND_API_KEY not set — renewal emails will be logged, not sent")

    if settings.FROM_EMAIL.endswith("@resend.dev"):
        warnings.append("FROM_EMAIL uses the Resend sandbox sender — verify a domain for production")

    for hour_name in ("RENEWAL_SWEEP_HOUR", "RETRY_SWEEP_HOUR"):
        hour = getattr(settings, hour_name)
        if not 0 <= hour <= 23:
            logger.critical("%s must be between 0 and 23 (got %s)", hour_name, hour)
            sys.exit(1)

    if settings.RENEWAL_SWEEP_HOUR == settings.RETRY_SWEEP_HOUR:
        warnings.append("Renewal and retry sweeps are scheduled for the same hour")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
