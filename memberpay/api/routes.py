"""
API routes for payment orchestration.
"""
from typing import Any, Dict
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from memberpay.core.errors import (
    AmountMismatch,
    AttemptAlreadyFinal,
    AttemptNotFound,
    DuplicatePurchase,
    GatewayAuthError,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidCallback,
    PaymentError,
    PaymentValidationError,
    StorageConflict,
)
from memberpay.core.orchestrator import (
    AttemptStatusView,
    InitiatePaymentCommand,
    PaymentOrchestrator,
)
from memberpay.monitoring.health import HealthCheck

from .schemas import (
    AttemptStatusResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthCheckResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

# Most specific first
ERROR_STATUS = (
    (PaymentValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidCallback, status.HTTP_400_BAD_REQUEST),
    (AttemptNotFound, status.HTTP_404_NOT_FOUND),
    (DuplicatePurchase, status.HTTP_409_CONFLICT),
    (AttemptAlreadyFinal, status.HTTP_409_CONFLICT),
    (AmountMismatch, status.HTTP_409_CONFLICT),
    (StorageConflict, status.HTTP_409_CONFLICT),
    (GatewayRejected, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (GatewayAuthError, status.HTTP_502_BAD_GATEWAY),
    (GatewayUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
)

# Messages for errors whose text is operational detail
GENERIC_MESSAGES = {
    "gateway_unavailable": "The payment provider is unavailable. Please try again later.",
    "gateway_auth_failed": "The payment provider could not be reached. Please try again later.",
    "gateway_error": "The payment provider returned an unexpected response.",
    "amount_mismatch": "The amount paid does not match the amount due.",
    "storage_conflict": "The request conflicted with another one. Please retry.",
}


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def to_http_error(error: PaymentError) -> HTTPException:
    """Translate a payment error into an HTTP error with a stable code."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = mapped
            break
    message = GENERIC_MESSAGES.get(error.code, str(error))
    return HTTPException(status_code=status_code, detail={"error": error.code, "message": message})


def _status_response(view: AttemptStatusView) -> Dict[str, Any]:
    return {
        "attempt_id": view.attempt_id,
        "status": view.status,
        "gateway": view.gateway,
        "kind": view.kind,
        "amount": view.amount,
        "currency": view.currency,
        "failure_reason": view.failure_reason,
        "external_reference": view.external_reference,
        "payment_id": view.payment_id,
        "created_at": view.created_at,
        "completed_at": view.completed_at,
    }


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate a payment",
    description="Record a payment attempt and start it with the chosen gateway",
)
async def create_payment(
    request: CreatePaymentRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Initiate a payment and return where to send the payer."""
    logger.info(
        "api_create_payment_request",
        user_id=request.user_id,
        gateway=request.gateway.value,
        kind=request.kind.value,
        amount=str(request.amount),
        currency=request.currency,
    )
    try:
        result = await orchestrator.initiate(
            InitiatePaymentCommand(
                user_id=request.user_id,
                amount=request.amount,
                currency=request.currency,
                gateway=request.gateway,
                kind=request.kind,
                payer_contact=request.payer_contact,
                description=request.description,
                metadata=request.metadata,
                attempt_id=request.attempt_id,
            )
        )
    except PaymentError as e:
        logger.warning("api_create_payment_error", error_code=e.code, error=str(e))
        raise to_http_error(e)

    return {
        "attempt_id": result.attempt_id,
        "status": result.status,
        "redirect_url": result.redirect_url,
        "token": result.token,
    }


@payment_router.get(
    "/{attempt_id}",
    response_model=AttemptStatusResponse,
    summary="Get payment status",
    description="Current status of a payment attempt, checked with the gateway while pending",
)
async def get_payment_status(
    attempt_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        view = await orchestrator.check_status(attempt_id)
    except PaymentError as e:
        logger.warning(
            "api_get_payment_status_error", attempt_id=attempt_id, error_code=e.code
        )
        raise to_http_error(e)
    return _status_response(view)


@payment_router.post(
    "/{attempt_id}/cancel",
    response_model=AttemptStatusResponse,
    summary="Cancel a payment",
    description="Abandon a pending payment attempt",
)
async def cancel_payment(
    attempt_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        view = await orchestrator.cancel(attempt_id)
    except PaymentError as e:
        logger.warning("api_cancel_payment_error", attempt_id=attempt_id, error_code=e.code)
        raise to_http_error(e)
    return _status_response(view)


async def _read_payload(request: Request) -> Dict[str, Any]:
    """
    Webhook body as a flat mapping.

    Gateways post either JSON or form-encoded bodies.
    """
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidCallback("Body is not valid JSON", "unknown") from None
        if not isinstance(payload, dict):
            raise InvalidCallback("Body is not a JSON object", "unknown")
        return payload
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


@webhook_router.post(
    "/{gateway}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Receive payment notifications from a gateway",
)
async def gateway_webhook(
    gateway: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Handle gateway notifications.

    Always acknowledged so gateways stop redelivering, except for payloads
    that fail validation.
    """
    try:
        payload = await _read_payload(request)
        outcome = await orchestrator.handle_webhook(gateway, payload)
    except InvalidCallback as e:
        logger.warning("api_webhook_invalid", gateway=gateway, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_callback", "message": "Invalid callback"},
        )
    except PaymentError as e:
        logger.error("api_webhook_error", gateway=gateway, error_code=e.code, error=str(e))
        return {"received": True, "result": "error"}

    return {"received": True, "result": outcome.result, "attempt_id": outcome.attempt_id}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
