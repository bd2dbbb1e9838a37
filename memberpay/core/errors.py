"""
Error taxonomy for payment orchestration.

Every error carries a stable ``code`` so the HTTP layer can render a
specific message ("invalid phone number" vs "try again later") without
inspecting exception text.
"""
from decimal import Decimal
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    code = "payment_error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    code = "invalid_request"


class GatewayError(PaymentError):
    """Base class for errors raised by a gateway adapter."""

    code = "gateway_error"

    def __init__(self, message: str, gateway: str, code: Optional[str] = None):
        super().__init__(message, code)
        self.gateway = gateway


class GatewayAuthError(GatewayError):
    """Credentials rejected or bearer token could not be acquired."""

    code = "gateway_auth_failed"


class GatewayRejected(GatewayError):
    """The provider declined the request (malformed phone number, bad amount...)."""

    code = "gateway_rejected"


class GatewayUnavailable(GatewayError):
    """
    Network failure, timeout or provider outage.

    ``retryable`` is True for transport-level failures (timeouts, resets),
    which adapters retry internally before surfacing.
    """

    code = "gateway_unavailable"

    def __init__(self, message: str, gateway: str, retryable: bool = True):
        super().__init__(message, gateway)
        self.retryable = retryable


class InvalidCallback(GatewayError):
    """Webhook payload failed schema validation. Never processed."""

    code = "invalid_callback"


class AmountMismatch(PaymentError):
    """Settled amount reported by the gateway differs from the recorded amount."""

    code = "amount_mismatch"

    def __init__(self, attempt_id: str, expected: Decimal, reported: Optional[Decimal]):
        super().__init__(
            f"Attempt {attempt_id}: gateway settled {reported}, expected {expected}"
        )
        self.attempt_id = attempt_id
        self.expected = expected
        self.reported = reported


class DuplicatePurchase(PaymentError):
    """The user already holds an active entitlement of the kind being purchased."""

    code = "duplicate_purchase"


class AttemptNotFound(PaymentError):
    """No payment attempt with the given id or reference."""

    code = "attempt_not_found"


class AttemptAlreadyFinal(PaymentError):
    """A caller-initiated change hit an attempt that is already terminal."""

    code = "attempt_already_final"


class StorageConflict(PaymentError):
    """
    Unique-constraint race on an idempotency key.

    Expected under concurrent delivery; callers re-read the winning row.
    """

    code = "storage_conflict"


class ActivationFailed(PaymentError):
    """Money moved but the entitlement could not be granted."""

    code = "activation_failed"

    def __init__(self, attempt_id: str, reason: str):
        super().__init__(f"Activation failed for attempt {attempt_id}: {reason}")
        self.attempt_id = attempt_id
        self.reason = reason


class InsufficientTokens(PaymentError):
    """Token debit larger than the available balance."""

    code = "insufficient_tokens"
