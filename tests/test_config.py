"""
Unit tests for configuration loading and validation.
"""

import logging

import pytest
from pydantic import ValidationError

from meterly.config import (
    BillingConfig,
    Settings,
    StripeConfig,
    get_settings,
    reset_settings,
)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BILLING_DEFAULT_METRIC", "export")
    monkeypatch.setenv("SERVICE_QUOTA_CHECK_RATE_LIMIT", "10/second")
    reset_settings()

    settings = get_settings()

    assert settings.billing.default_metric == "export"
    assert settings.service.quota_check_rate_limit == "10/second"


def test_settings_singleton():
    assert get_settings() is get_settings()


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        BillingConfig(timezone="Mars/Olympus_Mons")


def test_placeholder_admin_key_disables_admin(monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", "changeme-changeme-changeme-changeme")
    reset_settings()

    assert get_settings().admin_api_key is None


def test_empty_admin_key_is_none(monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", "")
    reset_settings()

    assert get_settings().admin_api_key is None


def test_placeholder_stripe_key_disables_stripe():
    config = StripeConfig(api_key="sk_test_your-key-here")

    assert config.api_key == ""
    assert config.is_configured is False


def test_price_id_for_plan():
    config = StripeConfig(price_starter="price_123")

    assert config.price_id_for("starter") == "price_123"
    assert config.price_id_for("pro") == ""


def test_validate_configuration_warns(monkeypatch, caplog):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setenv("ADMIN_API_KEY", "")
    settings = Settings()

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert "webhook secret not configured" in caplog.text
    assert "ADMIN_API_KEY not set" in caplog.text
