"""Tests for settings validation."""

import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError

from billing.config import Settings

LIVE = {"gateway_secret_key": "live_sk_123", "gateway_webhook_secret": "whsec_live"}


def test_postgres_url_gets_async_driver():
    settings = Settings(debug=True, database_url="postgresql://u:p@db:5432/billing")
    assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/billing"


def test_insecure_defaults_rejected_outside_debug():
    with pytest.raises(ValidationError, match="FERNET_KEY"):
        Settings(debug=False, fernet_key="change-me-fernet-key", **LIVE)


def test_missing_webhook_secret_rejected_outside_debug():
    key = Fernet.generate_key().decode()
    with pytest.raises(ValidationError, match="GATEWAY_WEBHOOK_SECRET"):
        Settings(debug=False, fernet_key=key, gateway_secret_key="live_sk_123", gateway_webhook_secret="")


def test_missing_webhook_secret_allowed_in_debug():
    assert Settings(debug=True, gateway_webhook_secret="").gateway_webhook_secret == ""


def test_invalid_fernet_key_rejected():
    with pytest.raises(ValidationError, match="not a valid Fernet key"):
        Settings(debug=False, fernet_key="short", **LIVE)


def test_production_settings_accepted():
    key = Fernet.generate_key().decode()
    settings = Settings(debug=False, fernet_key=key, **LIVE)
    assert settings.billing_max_concurrency == 5
    assert settings.billing_currency == "KRW"
