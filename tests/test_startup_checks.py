"""Tests for startup configuration checks."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from src.startup_checks import validate_settings

SETTINGS = "src.startup_checks.settings"


def _configure(mock, **overrides):
    values = {
        "DATABASE_URL": "sqlite+aiosqlite:///flora_billing.db",
        "STRIPE_SECRET_KEY": "sk_live_abc",
        "RESEND_API_KEY": "re_abc",
        "FROM_EMAIL": "billing@flora.example",
        "RENEWAL_SWEEP_HOUR": 2,
        "RETRY_SWEEP_HOUR": 10,
    }
    values.update(overrides)
    for key, value in values.items():
        setattr(mock, key, value)


class TestValidateSettings:
    def test_clean_config_has_no_warnings(self):
        with patch(SETTINGS) as s:
            _configure(s)
            assert validate_settings() == []

    def test_dev_without_keys_only_warns(self):
        with patch(SETTINGS) as s:
            _configure(s, STRIPE_SECRET_KEY="", RESEND_API_KEY="")
            warnings = validate_settings()
        assert any("STRIPE_SECRET_KEY" in w for w in warnings)
        assert any("RESEND_API_KEY" in w for w in warnings)

    def test_production_without_stripe_key_exits(self):
        with patch(SETTINGS) as s:
            _configure(s, DATABASE_URL="postgresql://db/flora", STRIPE_SECRET_KEY="")
            with pytest.raises(SystemExit):
                validate_settings()

    def test_test_key_in_production_warns(self):
        with patch(SETTINGS) as s:
            _configure(s, DATABASE_URL="postgresql://db/flora", STRIPE_SECRET_KEY="sk_test_abc")
            assert any("test key" in w for w in validate_settings())

    def test_invalid_sweep_hour_exits(self):
        with patch(SETTINGS) as s:
            _configure(s, RETRY_SWEEP_HOUR=24)
            with pytest.raises(SystemExit):
                validate_settings()

    def test_same_sweep_hour_warns(self):
        with patch(SETTINGS) as s:
            _configure(s, RETRY_SWEEP_HOUR=2)
            assert any("same hour" in w for w in validate_settings())

    def test_sandbox_sender_warns(self):
        with patch(SETTINGS) as s:
            _configure(s, FROM_EMAIL="onboarding@resend.dev")
            assert any("sandbox" in w for w in validate_settings())
