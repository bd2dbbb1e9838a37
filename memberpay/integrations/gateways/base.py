"""
Building blocks shared by the gateway adapters.

Implements:
- The capability set every adapter satisfies (``GatewayAdapter``)
- Bearer token caching with early refresh
- HTTP calls with bounded retry and error classification
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from memberpay.core.errors import (
    GatewayAuthError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidCallback,
    PaymentValidationError,
)
from memberpay.core.types import (
    Clock,
    Gateway,
    GatewayStatus,
    InitiationResult,
    NormalizedCallback,
    utcnow,
)

logger = structlog.get_logger(__name__)

TokenFetcher = Callable[[], Awaitable[Tuple[str, datetime]]]


class GatewayAdapter(Protocol):
    """Capability set of one payment provider."""

    gateway: Gateway
    # Decimal places of the amounts the provider settles
    amount_decimals: int

    async def initiate(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        payer_contact: str,
        description: str,
        callback_url: str,
    ) -> InitiationResult:
        ...

    async def verify_status(self, external_reference: str) -> GatewayStatus:
        ...

    def parse_webhook(self, payload: Mapping[str, Any]) -> NormalizedCallback:
        ...


class AccessTokenCache:
    """
    Bearer token with its expiry.

    Refreshed lazily on first use and again ``refresh_margin_seconds`` before
    it expires. Concurrent callers share one refresh.
    """

    def __init__(
        self,
        gateway: Gateway,
        fetch: TokenFetcher,
        clock: Clock = utcnow,
        refresh_margin_seconds: int = 300,
    ):
        """
        Initialize token cache.

        Args:
            gateway: Gateway the token belongs to (for errors and logs)
            fetch: Coroutine returning ``(token, expires_at)``
            clock: Source of the current time
            refresh_margin_seconds: Refresh this long before expiry
        """
        self.gateway = gateway
        self.token: Optional[str] = None
        self.expires_at: Optional[datetime] = None
        self._fetch = fetch
        self._clock = clock
        self._margin = timedelta(seconds=refresh_margin_seconds)
        self._lock = asyncio.Lock()

    def is_fresh(self) -> bool:
        if not self.token or self.expires_at is None:
            return False
        return self._clock() < self.expires_at - self._margin

    async def get(self) -> str:
        """
        Return a usable token, fetching a new one if needed.

        Raises:
            GatewayAuthError: If no token could be acquired
        """
        if self.is_fresh():
            return self.token  # type: ignore[return-value]

        async with self._lock:
            if self.is_fresh():
                return self.token  # type: ignore[return-value]

            token, expires_at = await self._fetch()
            if not token:
                raise GatewayAuthError("Empty access token", self.gateway.value)

            self.token = token
            self.expires_at = expires_at
            logger.info(
                "gateway_token_refreshed",
                gateway=self.gateway.value,
                expires_at=expires_at.isoformat(),
            )
            return token

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = None


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayUnavailable) and error.retryable


class GatewayHttp:
    """
    HTTP transport for one gateway.

    Transport failures are retried with exponential backoff. 4xx and 5xx
    responses are classified and never retried.
    """

    def __init__(
        self,
        gateway: Gateway,
        client: httpx.AsyncClient,
        max_attempts: int = 3,
        base_delay: float = 2.0,
    ):
        self.gateway = gateway
        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request with retry.

        Raises:
            GatewayAuthError: On 401/403
            GatewayRejected: On any other 4xx
            GatewayUnavailable: On transport failure or 5xx
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "gateway_request_retry",
                        gateway=self.gateway.value,
                        attempt=attempt.retry_state.attempt_number,
                        url=url,
                    )
                response = await self._send(method, url, **kwargs)
        return response

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        gateway = self.gateway.value
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(
                "gateway_transport_error",
                gateway=gateway,
                url=url,
                error=type(e).__name__,
            )
            raise GatewayUnavailable(f"{gateway} unreachable: {type(e).__name__}", gateway) from e

        if response.status_code >= 500:
            logger.error(
                "gateway_server_error", gateway=gateway, url=url, status=response.status_code
            )
            raise GatewayUnavailable(
                f"{gateway} returned {response.status_code}", gateway, retryable=False
            )
        if response.status_code in (401, 403):
            logger.error(
                "gateway_auth_rejected", gateway=gateway, url=url, status=response.status_code
            )
            raise GatewayAuthError(f"{gateway} refused credentials", gateway)
        if response.status_code >= 400:
            logger.warning(
                "gateway_request_rejected",
                gateway=gateway,
                url=url,
                status=response.status_code,
            )
            raise GatewayRejected(
                _provider_message(response) or f"{gateway} rejected the request", gateway
            )
        return response

    def json(self, response: httpx.Response) -> Dict[str, Any]:
        """Decode a provider response body as a JSON object."""
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayUnavailable(
                f"{self.gateway.value} returned a non-JSON body",
                self.gateway.value,
                retryable=False,
            ) from e
        if not isinstance(body, dict):
            raise GatewayUnavailable(
                f"{self.gateway.value} returned an unexpected body",
                self.gateway.value,
                retryable=False,
            )
        return body


def _provider_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for key in ("message", "msg", "description", "error_description"):
            if body.get(key):
                return str(body[key])
    return None


def parse_amount(value: Any, gateway: Gateway) -> Optional[Decimal]:
    """
    Read a provider amount as Decimal.

    Providers send amounts as strings or JSON numbers. Floats are routed
    through ``str`` so no binary rounding leaks into the ledger.
    """
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidCallback(f"Unparseable amount {value!r}", gateway.value) from e


def expiry_from(clock: Clock, expires_in: Any, default_seconds: int = 3600) -> datetime:
    """Absolute expiry for a token valid ``expires_in`` seconds from now."""
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = default_seconds
    return clock() + timedelta(seconds=seconds)


def settles_exactly(amount: Decimal, decimals: int) -> bool:
    return amount == amount.quantize(Decimal(1).scaleb(-decimals))


def format_amount(amount: Decimal, decimals: int) -> str:
    """
    Amount rendered with ``decimals`` places, as providers expect it.

    Raises:
        PaymentValidationError: If the amount has finer precision than that
    """
    if not settles_exactly(amount, decimals):
        raise PaymentValidationError(
            f"Amount {amount} cannot be settled with {decimals} decimal places",
            code="unsupported_amount",
        )
    return str(amount.quantize(Decimal(1).scaleb(-decimals)))


def normalize_status(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""
