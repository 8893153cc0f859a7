"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///flora_billing.db")

    # Stripe (off-session renewals)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    BILLING_CURRENCY = os.getenv("BILLING_CURRENCY", "aud")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

    # Catalog lookups during inventory validation
    CATALOG_TIMEOUT_SECONDS = float(os.getenv("CATALOG_TIMEOUT_SECONDS", "10"))

    # Resend (transactional email)
    RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
    RESEND_API_BASE = os.getenv("RESEND_API_BASE", "https://api.resend.com")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "onboarding@resend.dev")
    EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))

    # Links in customer emails
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # Sweep schedule (UTC hour of day)
    RENEWAL_SWEEP_HOUR = int(os.getenv("RENEWAL_SWEEP_HOUR", "2"))
    RETRY_SWEEP_HOUR = int(os.getenv("RETRY_SWEEP_HOUR", "10"))

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
