"""
Orange Money web-payment adapter.

OAuth client-credentials token, JSON web-payment initiation, status lookup
by pay token, and notification parsing.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from memberpay.core.errors import GatewayAuthError, GatewayError, GatewayRejected, InvalidCallback
from memberpay.core.types import (
    Gateway,
    GatewayStatus,
    InitiationResult,
    NormalizedCallback,
    Outcome,
    utcnow,
)
from memberpay.integrations.gateways.base import (
    AccessTokenCache,
    Clock,
    GatewayHttp,
    expiry_from,
    format_amount,
    normalize_status,
    parse_amount,
)

logger = structlog.get_logger(__name__)

ORANGE_MONEY_ENDPOINTS = {
    "sandbox": "https://api.orange.com/orange-money-webpay/dev/v1",
    "production": "https://api.orange.com/orange-money-webpay/v1",
}
ORANGE_MONEY_AUTH_URL = "https://api.orange.com/oauth/v3/token"

SUCCESS_STATUSES = {"success", "successful", "completed", "ok"}
FAILURE_STATUSES = {"failed", "failure", "expired", "cancelled", "canceled", "declined"}
PENDING_STATUSES = {"initiated", "pending"}


class OrangeMoneyNotification(BaseModel):
    """Payment notification posted to ``notif_url``."""

    status: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    txnid: Optional[str] = None
    amount: Optional[Any] = None
    notif_token: Optional[str] = None

    model_config = ConfigDict(extra="allow")


def _outcome(status: str) -> Optional[Outcome]:
    if status in SUCCESS_STATUSES:
        return Outcome.SUCCESS
    if status in FAILURE_STATUSES:
        return Outcome.FAILURE
    if status in PENDING_STATUSES:
        return Outcome.PENDING
    return None


class OrangeMoneyAdapter:
    """Orange Money web-payment gateway."""

    gateway = Gateway.ORANGE_MONEY
    amount_decimals = 0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        merchant_key: str,
        client: httpx.AsyncClient,
        environment: str = "sandbox",
        base_url: Optional[str] = None,
        currency_override: Optional[str] = None,
        clock: Clock = utcnow,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        refresh_margin_seconds: int = 300,
    ):
        """
        Initialize Orange Money adapter.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            merchant_key: Web-payment merchant key
            client: Shared HTTP client
            environment: 'sandbox' or 'production' endpoint set
            base_url: Explicit web-payment base URL (overrides environment)
            currency_override: Currency code sent instead of the attempt's (OUV in sandbox)
            clock: Source of the current time
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.merchant_key = merchant_key
        self.base_url = (base_url or ORANGE_MONEY_ENDPOINTS[environment]).rstrip("/")
        self.currency_override = currency_override
        self.clock = clock
        self.http = GatewayHttp(self.gateway, client, max_attempts, base_delay)
        self.tokens = AccessTokenCache(
            self.gateway, self._fetch_token, clock, refresh_margin_seconds
        )

    async def _fetch_token(self) -> Tuple[str, datetime]:
        try:
            response = await self.http.request(
                "POST",
                ORANGE_MONEY_AUTH_URL,
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json", "X-Merchant-Key": self.merchant_key},
            )
        except GatewayRejected as e:
            raise GatewayAuthError(str(e), self.gateway.value) from e
        body = self.http.json(response)
        token = body.get("access_token")
        if not token:
            raise GatewayAuthError("No access token in response", self.gateway.value)
        return token, expiry_from(self.clock, body.get("expires_in"))

    async def _headers(self) -> Dict[str, str]:
        token = await self.tokens.get()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "X-Merchant-Key": self.merchant_key,
        }

    async def initiate(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        payer_contact: str,
        description: str,
        callback_url: str,
    ) -> InitiationResult:
        """Create a web payment and return the hosted payment page."""
        wire_currency = self.currency_override or currency
        payload = {
            "merchant_key": self.merchant_key,
            "currency": wire_currency,
            "order_id": order_id,
            "amount": format_amount(amount, self.amount_decimals),
            "return_url": callback_url,
            "cancel_url": f"{callback_url}?cancel=true",
            "notif_url": callback_url,
            "lang": "fr",
            "reference": order_id,
        }
        logger.info(
            "orange_money_initiating",
            order_id=order_id,
            amount=str(amount),
            currency=wire_currency,
        )

        response = await self.http.request(
            "POST", f"{self.base_url}/webpayment", json=payload, headers=await self._headers()
        )
        body = self.http.json(response)

        payment_url = body.get("payment_url")
        if not payment_url:
            raise GatewayRejected(
                body.get("message") or "No payment URL in response", self.gateway.value
            )

        pay_token = body.get("pay_token")
        logger.info("orange_money_initiated", order_id=order_id, has_pay_token=bool(pay_token))
        return InitiationResult(
            external_reference=pay_token or order_id,
            redirect_url=payment_url,
            token=pay_token,
        )

    async def verify_status(self, external_reference: str) -> GatewayStatus:
        """Look up the current status of a web payment."""
        response = await self.http.request(
            "GET", f"{self.base_url}/payment/{external_reference}", headers=await self._headers()
        )
        body = self.http.json(response)
        raw_status = normalize_status(body.get("status"))
        outcome = _outcome(raw_status)
        if outcome is None:
            raise GatewayError(f"Unknown status {raw_status!r}", self.gateway.value)

        return GatewayStatus(
            outcome=outcome,
            amount=parse_amount(body.get("amount"), self.gateway),
            settled_reference=body.get("txnid") or body.get("reference"),
            raw_status=raw_status,
        )

    def parse_webhook(self, payload: Mapping[str, Any]) -> NormalizedCallback:
        """
        Validate and normalize a payment notification.

        Raises:
            InvalidCallback: If the payload is malformed or carries an unknown status
        """
        try:
            notification = OrangeMoneyNotification.model_validate(dict(payload))
        except ValidationError as e:
            raise InvalidCallback(
                f"Malformed notification: {e.error_count()} errors", self.gateway.value
            ) from e

        outcome = _outcome(normalize_status(notification.status))
        if outcome is None:
            raise InvalidCallback(f"Unknown status {notification.status!r}", self.gateway.value)

        return NormalizedCallback(
            gateway=self.gateway,
            external_reference=notification.order_id,
            outcome=outcome,
            settled_reference=notification.txnid,
            amount=parse_amount(notification.amount, self.gateway),
        )
