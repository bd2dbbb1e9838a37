"""Payment gateway adapters and the registry selecting them."""
from typing import Dict, Optional

import httpx

from memberpay.config import Settings
from memberpay.core.types import Gateway, utcnow
from memberpay.integrations.gateways.base import (
    AccessTokenCache,
    Clock,
    GatewayAdapter,
    GatewayHttp,
)
from memberpay.integrations.gateways.cinetpay import CinetPayAdapter
from memberpay.integrations.gateways.orange_money import OrangeMoneyAdapter
from memberpay.integrations.gateways.sama_money import SamaMoneyAdapter

GatewayRegistry = Dict[Gateway, GatewayAdapter]


def build_gateways(
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utcnow,
) -> GatewayRegistry:
    """
    Build one adapter per enabled gateway.

    Args:
        settings: Application settings (credentials already validated)
        client: Shared HTTP client; one with the configured timeout is created if omitted
        clock: Source of the current time for token expiry

    Returns:
        Mapping of gateway to adapter
    """
    if client is None:
        client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)

    retry = {
        "max_attempts": settings.gateway_retry_max_attempts,
        "base_delay": settings.gateway_retry_base_delay,
    }
    registry: GatewayRegistry = {}
    for name in settings.get_enabled_gateways():
        gateway = Gateway(name)
        if gateway is Gateway.ORANGE_MONEY:
            registry[gateway] = OrangeMoneyAdapter(
                client_id=settings.orange_money_client_id,
                client_secret=settings.orange_money_client_secret,
                merchant_key=settings.orange_money_merchant_key,
                client=client,
                environment=settings.payment_environment,
                base_url=settings.orange_money_base_url,
                currency_override=settings.orange_money_currency if settings.is_sandbox else None,
                clock=clock,
                refresh_margin_seconds=settings.token_refresh_margin_seconds,
                **retry,
            )
        elif gateway is Gateway.SAMA_MONEY:
            registry[gateway] = SamaMoneyAdapter(
                merchant_id=settings.sama_money_merchant_id,
                public_key=settings.sama_money_public_key,
                transac_header=settings.sama_money_transac_header,
                client=client,
                environment=settings.payment_environment,
                base_url=settings.sama_money_base_url,
                clock=clock,
                refresh_margin_seconds=settings.token_refresh_margin_seconds,
                **retry,
            )
        elif gateway is Gateway.CINETPAY:
            registry[gateway] = CinetPayAdapter(
                api_key=settings.cinetpay_api_key,
                site_id=settings.cinetpay_site_id,
                client=client,
                base_url=settings.cinetpay_base_url,
                **retry,
            )
    return registry


__all__ = [
    "AccessTokenCache",
    "CinetPayAdapter",
    "GatewayAdapter",
    "GatewayHttp",
    "GatewayRegistry",
    "OrangeMoneyAdapter",
    "SamaMoneyAdapter",
    "build_gateways",
]
