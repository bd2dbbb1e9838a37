"""
CinetPay checkout adapter.

Card and wallet aggregator: hosted checkout page, transaction check and
server-to-server notification.
"""
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from memberpay.core.errors import GatewayRejected, InvalidCallback
from memberpay.core.types import (
    EMAIL_PATTERN,
    Gateway,
    GatewayStatus,
    InitiationResult,
    NormalizedCallback,
    Outcome,
)
from memberpay.integrations.gateways.base import (
    GatewayHttp,
    format_amount,
    normalize_status,
    parse_amount,
)

logger = structlog.get_logger(__name__)

CINETPAY_BASE_URL = "https://api-checkout.cinetpay.com/v2"

# Checkout API response code for a created session
CODE_CREATED = "201"

SUCCESS_STATUSES = {"accepted", "00"}  # "00" is cpm_result for an accepted payment
FAILURE_STATUSES = {"refused", "cancelled", "canceled", "failed"}
PENDING_STATUSES = {"waiting_for_customer", "waiting_customer_payment", "pending"}


class CinetPayNotification(BaseModel):
    """Notification posted to ``notify_url``."""

    cpm_trans_id: str = Field(..., min_length=1)
    cpm_site_id: str = Field(..., min_length=1)
    cpm_amount: Optional[Any] = None
    cpm_currency: Optional[str] = None
    cpm_result: Optional[str] = None
    status: Optional[str] = None
    cpm_payid: Optional[str] = None
    operator_id: Optional[str] = None

    model_config = ConfigDict(extra="allow")


def _outcome(status: str) -> Optional[Outcome]:
    if status in SUCCESS_STATUSES:
        return Outcome.SUCCESS
    if status in FAILURE_STATUSES:
        return Outcome.FAILURE
    if status in PENDING_STATUSES:
        return Outcome.PENDING
    return None


class CinetPayAdapter:
    """CinetPay hosted checkout gateway."""

    gateway = Gateway.CINETPAY
    amount_decimals = 0

    def __init__(
        self,
        api_key: str,
        site_id: str,
        client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        max_attempts: int = 3,
        base_delay: float = 2.0,
    ):
        self.api_key = api_key
        self.site_id = str(site_id)
        self.base_url = (base_url or CINETPAY_BASE_URL).rstrip("/")
        self.http = GatewayHttp(self.gateway, client, max_attempts, base_delay)

    async def initiate(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        payer_contact: str,
        description: str,
        callback_url: str,
    ) -> InitiationResult:
        """Open a checkout session and return the hosted page URL."""
        payload: Dict[str, Any] = {
            "apikey": self.api_key,
            "site_id": self.site_id,
            "transaction_id": order_id,
            "amount": int(format_amount(amount, self.amount_decimals)),
            "currency": currency,
            "description": description,
            "notify_url": callback_url,
            "return_url": callback_url,
            "channels": "ALL",
            "lang": "fr",
        }
        if EMAIL_PATTERN.match(payer_contact):
            payload["customer_email"] = payer_contact
        else:
            payload["customer_phone_number"] = payer_contact

        logger.info("cinetpay_initiating", order_id=order_id, amount=str(amount), currency=currency)
        response = await self.http.request("POST", f"{self.base_url}/payment", json=payload)
        body = self.http.json(response)

        data = body.get("data") or {}
        if str(body.get("code")) != CODE_CREATED or not data.get("payment_url"):
            raise GatewayRejected(
                body.get("description") or body.get("message") or "Checkout refused",
                self.gateway.value,
            )

        logger.info("cinetpay_initiated", order_id=order_id)
        return InitiationResult(
            external_reference=order_id,
            redirect_url=data["payment_url"],
            token=data.get("payment_token"),
        )

    async def verify_status(self, external_reference: str) -> GatewayStatus:
        response = await self.http.request(
            "POST",
            f"{self.base_url}/payment/check",
            json={
                "apikey": self.api_key,
                "site_id": self.site_id,
                "transaction_id": external_reference,
            },
        )
        body = self.http.json(response)
        data = body.get("data") or {}
        raw_status = normalize_status(data.get("status"))
        outcome = _outcome(raw_status)
        if outcome is None:
            # Codes other than "00" with no status (e.g. 662 WAITING_CUSTOMER) are in flight.
            outcome = Outcome.PENDING

        return GatewayStatus(
            outcome=outcome,
            amount=parse_amount(data.get("amount"), self.gateway),
            settled_reference=data.get("operator_id"),
            raw_status=raw_status or str(body.get("code")),
        )

    def parse_webhook(self, payload: Mapping[str, Any]) -> NormalizedCallback:
        """
        Validate and normalize a checkout notification.

        Raises:
            InvalidCallback: If the payload is malformed, names another site,
                or carries an unknown status
        """
        try:
            notification = CinetPayNotification.model_validate(dict(payload))
        except ValidationError as e:
            raise InvalidCallback(
                f"Malformed notification: {e.error_count()} errors", self.gateway.value
            ) from e

        if notification.cpm_site_id != self.site_id:
            raise InvalidCallback("Notification for another site", self.gateway.value)

        raw_status = normalize_status(notification.status or notification.cpm_result)
        outcome = _outcome(raw_status)
        if outcome is None:
            raise InvalidCallback(f"Unknown status {raw_status!r}", self.gateway.value)

        return NormalizedCallback(
            gateway=self.gateway,
            external_reference=notification.cpm_trans_id,
            outcome=outcome,
            settled_reference=notification.cpm_payid or notification.operator_id,
            amount=parse_amount(notification.cpm_amount, self.gateway),
        )
