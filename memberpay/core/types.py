"""
Value objects and enums shared by the adapters, ledger and activator.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class Gateway(str, Enum):
    """Supported payment gateways."""

    ORANGE_MONEY = "orange_money"  # mobile money
    SAMA_MONEY = "sama_money"  # mobile money
    CINETPAY = "cinetpay"  # card / aggregator

    @property
    def is_mobile_money(self) -> bool:
        return self in (Gateway.ORANGE_MONEY, Gateway.SAMA_MONEY)


class AttemptStatus(str, Enum):
    """PaymentAttempt lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptStatus.PENDING


class PaymentStatus(str, Enum):
    """Finalized Payment states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Outcome(str, Enum):
    """Outcome a gateway reports for an attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class EntitlementKind(str, Enum):
    """What a payment buys."""

    MEMBERSHIP = "membership_payment"
    TOKENS = "token_purchase"
    LISTING_FEE = "marketplace_listing_fee"


class FailureReason(str, Enum):
    """Why an attempt ended up failed."""

    GATEWAY_FAILURE = "gateway_failure"
    REJECTED = "rejected"
    GATEWAY_ERROR = "gateway_error"
    AMOUNT_MISMATCH = "amount_mismatch"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Minor-unit exponent per accepted currency. West African CFA (XOF) and the
# Orange Money sandbox currency (OUV) have no minor unit.
CURRENCY_EXPONENTS: Dict[str, int] = {
    "XOF": 0,
    "OUV": 0,
    "EUR": 2,
    "USD": 2,
}


# Payer contact formats
PHONE_PATTERN = re.compile(r"^\+?\d{8,15}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


class Money(BaseModel):
    """
    Amount with currency, quantized to the currency's precision.

    Never built from float: amounts arrive as Decimal or decimal strings.
    """

    amount: Decimal
    currency: str

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Only currencies with a known precision are accepted."""
        v = v.upper()
        if v not in CURRENCY_EXPONENTS:
            raise ValueError(f"Unsupported currency: {v}")
        return v

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-CURRENCY_EXPONENTS[self.currency])

    def quantized(self) -> Decimal:
        return self.amount.quantize(self.quantum, rounding=ROUND_HALF_UP)

    def matches(self, other: Optional[Decimal]) -> bool:
        """
        Equality at currency precision.

        ``Money(10000, "XOF").matches(Decimal("10000.00"))`` is True,
        ``matches(Decimal("9500"))`` is False.
        """
        if other is None:
            return False
        other_q = Decimal(other).quantize(self.quantum, rounding=ROUND_HALF_UP)
        return self.quantized() == other_q

    def __repr__(self) -> str:
        return f"Money({self.amount}, {self.currency})"


@dataclass(frozen=True)
class InitiationResult:
    """What a gateway hands back when a payment is initiated."""

    external_reference: str
    redirect_url: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class GatewayStatus:
    """Normalized result of a status verification call."""

    outcome: Outcome
    amount: Optional[Decimal] = None
    settled_reference: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass(frozen=True)
class NormalizedCallback:
    """Webhook payload after provider-specific validation."""

    gateway: Gateway
    external_reference: str
    outcome: Outcome
    settled_reference: Optional[str]
    amount: Optional[Decimal]
