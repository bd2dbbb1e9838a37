"""
Tests for environment-based configuration.
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from memberpay.config import Settings

DATABASE_URL = "sqlite+aiosqlite:///memberpay.db"


class TestSettings:
    """Settings validation."""

    @pytest.mark.unit
    def test_only_enabled_gateways_need_credentials(self) -> None:
        settings = Settings(
            database_url=DATABASE_URL,
            enabled_gateways="cinetpay",
            cinetpay_api_key="key",
            cinetpay_site_id="1",
        )

        assert settings.get_enabled_gateways() == ["cinetpay"]
        assert settings.commission_rate == Decimal("0.10")
        assert settings.pending_attempt_ttl_minutes == 30

    @pytest.mark.unit
    def test_missing_credentials_fail_fast(self) -> None:
        with pytest.raises(ValidationError, match="orange_money_merchant_key"):
            Settings(
                database_url=DATABASE_URL,
                enabled_gateways="orange_money",
                orange_money_client_id="id",
                orange_money_client_secret="secret",
            )

    @pytest.mark.unit
    def test_unknown_gateway(self) -> None:
        with pytest.raises(ValidationError, match="Unknown gateway"):
            Settings(database_url=DATABASE_URL, enabled_gateways="paypal")

    @pytest.mark.unit
    def test_sama_production_needs_base_url(self) -> None:
        fields = dict(
            database_url=DATABASE_URL,
            enabled_gateways="sama_money",
            payment_environment="production",
            sama_money_merchant_id="m",
            sama_money_public_key="k",
            sama_money_transac_header="t",
        )
        with pytest.raises(ValidationError, match="sama_money_base_url"):
            Settings(**fields)

        settings = Settings(**fields, sama_money_base_url="https://sama.example/V1")
        assert settings.is_sandbox is False

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "field, value",
        [
            ("payment_environment", "staging"),
            ("log_level", "CHATTY"),
            ("commission_rate", "1.5"),
        ],
    )
    def test_invalid_values(self, field: str, value: str) -> None:
        with pytest.raises(ValidationError):
            Settings(database_url=DATABASE_URL, enabled_gateways="", **{field: value})

    @pytest.mark.unit
    def test_callback_url(self) -> None:
        settings = Settings(
            database_url=DATABASE_URL, enabled_gateways="", app_url="https://pay.example/"
        )
        assert settings.callback_url("orange_money") == "https://pay.example/webhooks/orange_money"

    @pytest.mark.unit
    def test_environment_flags(self) -> None:
        settings = Settings(
            database_url=DATABASE_URL,
            enabled_gateways="",
            app_env="Production",
            allowed_origins="https://a.example, https://b.example",
        )

        assert settings.is_production is True
        assert settings.is_sandbox is True
        assert settings.get_allowed_origins_list() == ["https://a.example", "https://b.example"]
