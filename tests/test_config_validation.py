"""Tests for startup settings validation."""

from __future__ import annotations

import dataclasses
import os
from unittest.mock import patch

from billing_engine.config import settings, validate_settings


def _configured(**overrides):
    base = dataclasses.replace(
        settings,
        webhook_shared_secret="shared",
        billing_sweep_token="token",
        provider_start_timeout_seconds=10.0,
        database_url="postgresql+psycopg://billing@db/billing",
    )
    return dataclasses.replace(base, **overrides)


class TestValidateSettings:
    def test_fully_configured_has_no_warnings(self) -> None:
        assert validate_settings(_configured()) == []

    def test_missing_webhook_secrets_warn_per_provider(self) -> None:
        warnings = validate_settings(_configured(webhook_shared_secret=""))
        assert len(warnings) == 3
        for provider in ("zarinpal", "idpay", "nextpay"):
            assert any(provider in w for w in warnings)

    def test_provider_specific_secret_covers_one_provider(self) -> None:
        warnings = validate_settings(
            _configured(webhook_shared_secret="", idpay_webhook_secret="idpay-secret")
        )
        assert len(warnings) == 2
        assert not any("idpay" in w for w in warnings)

    def test_missing_sweep_token(self) -> None:
        warnings = validate_settings(_configured(billing_sweep_token=""))
        assert any("BILLING_SWEEP_TOKEN" in w for w in warnings)

    def test_non_positive_timeout(self) -> None:
        warnings = validate_settings(_configured(provider_start_timeout_seconds=0))
        assert any("PROVIDER_START_TIMEOUT_SECONDS" in w for w in warnings)

    def test_localhost_database_in_production(self) -> None:
        s = _configured(database_url="postgresql+psycopg://postgres@localhost/billing")
        with patch.dict(os.environ, {"ENVIRONMENT": "production"}):
            warnings = validate_settings(s)
        assert any("localhost" in w for w in warnings)

    def test_localhost_database_fine_in_dev(self) -> None:
        s = _configured(database_url="postgresql+psycopg://postgres@localhost/billing")
        with patch.dict(os.environ, {"ENVIRONMENT": "dev"}):
            assert validate_settings(s) == []


class TestWebhookSecretFor:
    def test_specific_secret_wins(self) -> None:
        s = _configured(zarinpal_webhook_secret="zp")
        assert s.webhook_secret_for("zarinpal") == "zp"
        assert s.webhook_secret_for("nextpay") == "shared"

    def test_unknown_provider_gets_shared(self) -> None:
        assert _configured().webhook_secret_for("paypal") == "shared"
