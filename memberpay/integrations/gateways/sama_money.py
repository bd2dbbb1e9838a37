"""SAMA Money merchant push-payment adapter."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from memberpay.core.errors import GatewayAuthError, GatewayRejected, InvalidCallback
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

SAMA_MONEY_SANDBOX_URL = "https://smarchandamatest.sama.money/V1"

# Transaction status codes: 1 settled, 0 failed, anything else still in flight.
SUCCESS_STATUSES = {"1", "success", "ok", "completed"}
FAILURE_STATUSES = {"0", "-1", "failed", "failure", "cancelled", "canceled", "expired"}
PENDING_STATUSES = {"2", "pending"}


class SamaMoneyNotification(BaseModel):
    """Callback posted to the merchant ``url``."""

    idCommande: str = Field(..., min_length=1)
    status: Optional[Any] = None
    etat: Optional[Any] = None
    montant: Optional[Any] = None
    numTransacSAMA: Optional[str] = None
    transNumber: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def require_status(self) -> "SamaMoneyNotification":
        if self.status is None and self.etat is None:
            raise ValueError("status or etat is required")
        return self


def _outcome(status: str) -> Optional[Outcome]:
    if status in SUCCESS_STATUSES:
        return Outcome.SUCCESS
    if status in FAILURE_STATUSES:
        return Outcome.FAILURE
    if status in PENDING_STATUSES:
        return Outcome.PENDING
    return None


def _parse_token_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SamaMoneyAdapter:
    """SAMA Money merchant gateway."""

    gateway = Gateway.SAMA_MONEY
    amount_decimals = 0

    def __init__(
        self,
        merchant_id: str,
        public_key: str,
        transac_header: str,
        client: httpx.AsyncClient,
        environment: str = "sandbox",
        base_url: Optional[str] = None,
        clock: Clock = utcnow,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        refresh_margin_seconds: int = 300,
    ):
        self.merchant_id = merchant_id
        self.public_key = public_key
        self.transac_header = transac_header
        if base_url is None and environment != "sandbox":
            raise ValueError("SAMA Money production requires an explicit base URL")
        self.base_url = (base_url or SAMA_MONEY_SANDBOX_URL).rstrip("/")
        self.clock = clock
        self.http = GatewayHttp(self.gateway, client, max_attempts, base_delay)
        self.tokens = AccessTokenCache(
            self.gateway, self._fetch_token, clock, refresh_margin_seconds
        )

    async def _fetch_token(self) -> Tuple[str, datetime]:
        try:
            response = await self.http.request(
                "POST",
                f"{self.base_url}/marchand/auth",
                data={"cmd": self.merchant_id, "cle_publique": self.public_key},
                headers={"Accept": "application/json", "TRANSAC": self.transac_header},
            )
        except GatewayRejected as e:
            raise GatewayAuthError(str(e), self.gateway.value) from e

        body = self.http.json(response)
        result = body.get("resultat") or {}
        token = result.get("token") if isinstance(result, dict) else None
        if normalize_status(body.get("status")) != "1" or not token:
            raise GatewayAuthError("Merchant token refused", self.gateway.value)

        expires_at = _parse_token_expiry(result.get("dFin")) or expiry_from(self.clock, None)
        return token, expires_at

    async def _headers(self) -> Tuple[str, Dict[str, str]]:
        token = await self.tokens.get()
        return token, {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "TRANSAC": self.transac_header,
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
        """Push a payment request to the payer's handset."""
        token, headers = await self._headers()
        phone = "".join(ch for ch in payer_contact if ch.isdigit())
        form = {
            "cmd": self.merchant_id,
            "idCommande": order_id,
            "phoneClient": phone,
            "montant": format_amount(amount, self.amount_decimals),
            "description": description,
            "tokenMarchand": token,
            "url": callback_url,
        }
        logger.info("sama_money_initiating", order_id=order_id, amount=str(amount))

        response = await self.http.request(
            "POST", f"{self.base_url}/marchand/pay", data=form, headers=headers
        )
        body = self.http.json(response)

        if normalize_status(body.get("status")) != "1":
            raise GatewayRejected(
                body.get("msg") or "Payment request declined", self.gateway.value
            )

        logger.info("sama_money_initiated", order_id=order_id)
        return InitiationResult(
            external_reference=body.get("idCommande") or order_id,
            token=body.get("transNumber"),
        )

    async def verify_status(self, external_reference: str) -> GatewayStatus:
        _, headers = await self._headers()
        response = await self.http.request(
            "GET",
            f"{self.base_url}/marchand/transaction/infos",
            params={"cmd": self.merchant_id, "idCommande": external_reference},
            headers=headers,
        )
        body = self.http.json(response)
        raw_status = normalize_status(body.get("status"))
        outcome = _outcome(raw_status) or Outcome.PENDING

        return GatewayStatus(
            outcome=outcome,
            amount=parse_amount(body.get("montant"), self.gateway),
            settled_reference=body.get("numTransacSAMA"),
            raw_status=raw_status,
        )

    def parse_webhook(self, payload: Mapping[str, Any]) -> NormalizedCallback:
        try:
            notification = SamaMoneyNotification.model_validate(dict(payload))
        except ValidationError as e:
            raise InvalidCallback(
                f"Malformed callback: {e.error_count()} errors", self.gateway.value
            ) from e

        raw_status = normalize_status(
            notification.status if notification.status is not None else notification.etat
        )
        outcome = _outcome(raw_status)
        if outcome is None:
            raise InvalidCallback(f"Unknown status {raw_status!r}", self.gateway.value)

        return NormalizedCallback(
            gateway=self.gateway,
            external_reference=notification.idCommande,
            outcome=outcome,
            settled_reference=notification.numTransacSAMA or notification.transNumber,
            amount=parse_amount(notification.montant, self.gateway),
        )
