"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_GATEWAYS = ("orange_money", "sama_money", "cinetpay")

# Settings field names that must be present for each enabled gateway.
REQUIRED_GATEWAY_CREDENTIALS = {
    "orange_money": (
        "orange_money_client_id",
        "orange_money_client_secret",
        "orange_money_merchant_key",
    ),
    "sama_money": (
        "sama_money_merchant_id",
        "sama_money_public_key",
        "sama_money_transac_header",
    ),
    "cinetpay": (
        "cinetpay_api_key",
        "cinetpay_site_id",
    ),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Gateway selection
    enabled_gateways: str = Field(
        default="orange_money,sama_money,cinetpay",
        description="Gateways accepting payments (comma-separated)",
    )
    payment_environment: str = Field(
        default="sandbox", description="Gateway endpoint set (sandbox/production)"
    )
    app_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL used to build gateway callback URLs",
    )

    # Orange Money
    orange_money_client_id: Optional[str] = Field(default=None, description="OAuth client id")
    orange_money_client_secret: Optional[str] = Field(
        default=None, description="OAuth client secret"
    )
    orange_money_merchant_key: Optional[str] = Field(
        default=None, description="Web-payment merchant key"
    )
    orange_money_base_url: Optional[str] = Field(
        default=None, description="Override for the web-payment API base URL"
    )
    orange_money_currency: str = Field(default="OUV", description="Currency code sent to Orange")

    # SAMA Money
    sama_money_merchant_id: Optional[str] = Field(default=None, description="Merchant id (cmd)")
    sama_money_public_key: Optional[str] = Field(default=None, description="Merchant public key")
    sama_money_transac_header: Optional[str] = Field(
        default=None, description="Value of the TRANSAC header"
    )
    sama_money_base_url: Optional[str] = Field(
        default=None, description="Override for the merchant API base URL"
    )

    # CinetPay
    cinetpay_api_key: Optional[str] = Field(default=None, description="CinetPay API key")
    cinetpay_site_id: Optional[str] = Field(default=None, description="CinetPay site id")
    cinetpay_base_url: Optional[str] = Field(
        default=None, description="Override for the checkout API base URL"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="memberpay", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Gateway calls
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for initiate/verify calls (seconds)"
    )
    gateway_retry_max_attempts: int = Field(
        default=3, description="Attempts per gateway call on network failure"
    )
    gateway_retry_base_delay: float = Field(
        default=2.0, description="Base delay for retry backoff (seconds)"
    )
    token_refresh_margin_seconds: int = Field(
        default=300, description="Refresh gateway bearer tokens this early (seconds)"
    )

    # Lifecycle
    pending_attempt_ttl_minutes: int = Field(
        default=30, description="Pending attempts older than this are expired"
    )
    sweep_interval_seconds: float = Field(
        default=60.0, description="Interval between expiry sweeps (seconds)"
    )

    # Referral commissions
    commission_rate: Decimal = Field(
        default=Decimal("0.10"), description="Share of a referred payment paid to the referrer"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("payment_environment")
    @classmethod
    def validate_payment_environment(cls, v: str) -> str:
        """Validate gateway environment flag."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("payment_environment must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("commission_rate")
    @classmethod
    def validate_commission_rate(cls, v: Decimal) -> Decimal:
        """Commission rate is a fraction between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("commission_rate must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_gateway_credentials(self) -> "Settings":
        """
        Fail fast when an enabled gateway is missing credentials.

        Raises:
            ValueError: If a gateway name is unknown or a credential is missing
        """
        for gateway in self.get_enabled_gateways():
            if gateway not in REQUIRED_GATEWAY_CREDENTIALS:
                raise ValueError(
                    f"Unknown gateway '{gateway}'. Must be one of: {list(KNOWN_GATEWAYS)}"
                )
            missing = [
                name
                for name in REQUIRED_GATEWAY_CREDENTIALS[gateway]
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"Gateway '{gateway}' is enabled but missing credentials: {missing}"
                )
        if (
            "sama_money" in self.get_enabled_gateways()
            and self.payment_environment == "production"
            and not self.sama_money_base_url
        ):
            raise ValueError("sama_money_base_url is required in production")
        return self

    def get_enabled_gateways(self) -> List[str]:
        """Parse enabled gateways from comma-separated string."""
        return [g.strip().lower() for g in self.enabled_gateways.split(",") if g.strip()]

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def callback_url(self, gateway: str) -> str:
        """Webhook URL a gateway should notify for payments it settles."""
        return f"{self.app_url.rstrip('/')}/webhooks/{gateway}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if gateways are pointed at sandbox endpoints."""
        return self.payment_environment == "sandbox"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
