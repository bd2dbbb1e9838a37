"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from memberpay.core.types import EntitlementKind, Gateway


class CreatePaymentRequest(BaseModel):
    """Request schema for initiating a payment."""

    user_id: str = Field(..., min_length=1, description="Paying user")
    amount: Decimal = Field(..., gt=0, description="Amount in major units (e.g. 10000 XOF)")
    currency: str = Field(
        ..., min_length=3, max_length=3, description="Currency code (XOF, OUV, EUR, USD)"
    )
    gateway: Gateway = Field(..., description="Gateway to pay through")
    kind: EntitlementKind = Field(..., description="What the payment buys")
    payer_contact: str = Field(
        ..., min_length=1, description="Payer phone number (or e-mail for cards)"
    )
    description: str = Field(default="", max_length=255, description="Shown to the payer")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific fields (tier, plan, service_type, listing_id, referral_code)",
    )
    attempt_id: Optional[str] = Field(
        default=None, max_length=64, description="Caller-chosen attempt id"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency code."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "5f0c2b1e9d3a4c7e8b6a1f2d3c4b5a69",
                    "amount": "10000",
                    "currency": "XOF",
                    "gateway": "orange_money",
                    "kind": "membership_payment",
                    "payer_contact": "70000000",
                    "description": "Premium membership",
                    "metadata": {"tier": "premium", "plan": "monthly"},
                }
            ]
        }
    }


class CreatePaymentResponse(BaseModel):
    """Response schema for payment initiation."""

    attempt_id: str = Field(..., description="Payment attempt ID")
    status: str = Field(..., description="Attempt status")
    redirect_url: Optional[str] = Field(default=None, description="Hosted payment page")
    token: Optional[str] = Field(default=None, description="Gateway payment token")


class AttemptStatusResponse(BaseModel):
    """Response schema for attempt status."""

    attempt_id: str
    status: str
    gateway: str
    kind: str
    amount: Decimal
    currency: str
    failure_reason: Optional[str] = None
    external_reference: Optional[str] = None
    payment_id: Optional[str] = Field(
        default=None, description="Set once the entitlement is granted"
    )
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    """Acknowledgement returned to gateways."""

    received: bool = Field(default=True)
    result: str = Field(..., description="What the delivery did")
    attempt_id: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
