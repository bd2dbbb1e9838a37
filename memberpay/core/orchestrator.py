"""
Payment orchestration facade.

The one entry point the rest of the platform uses:

- ``initiate``: validate, record a pending attempt, call the gateway
- ``handle_webhook``: apply a gateway notification
- ``check_status``: current state, asking the gateway while pending
- ``cancel``: abandon a pending attempt
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memberpay.config import Settings
from memberpay.core.collaborators import (
    MembershipStore,
    SqlMembershipStore,
    SqlReferralStore,
)
from memberpay.core.entitlements import MEMBERSHIP_TIERS, PLAN_DURATIONS, EntitlementActivator
from memberpay.core.errors import (
    AttemptAlreadyFinal,
    DuplicatePurchase,
    GatewayError,
    GatewayRejected,
    InvalidCallback,
    PaymentValidationError,
    StorageConflict,
)
from memberpay.core.ledger import AttemptSpec, PaymentLedger
from memberpay.core.notifications import LoggingNotifier, Notifier
from memberpay.core.reconciliation import ReconciliationEngine, WebhookOutcome
from memberpay.core.tokens import TOKEN_VALUES, TokenLedger, tokens_for
from memberpay.core.types import (
    CURRENCY_EXPONENTS,
    EMAIL_PATTERN,
    PHONE_PATTERN,
    AttemptStatus,
    Clock,
    EntitlementKind,
    FailureReason,
    Gateway,
    Money,
    utcnow,
)
from memberpay.database.models import ListingFee, PaymentAttempt
from memberpay.integrations.gateways import GatewayRegistry
from memberpay.integrations.gateways.base import settles_exactly
from memberpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TIER_RANK = {tier: rank for rank, tier in enumerate(MEMBERSHIP_TIERS)}


@dataclass
class InitiatePaymentCommand:
    """A user's request to pay for something."""

    user_id: str
    amount: Decimal
    currency: str
    gateway: Union[Gateway, str]
    kind: Union[EntitlementKind, str]
    payer_contact: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt_id: Optional[str] = None


@dataclass(frozen=True)
class InitiationResponse:
    attempt_id: str
    status: str
    redirect_url: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class AttemptStatusView:
    """Read model of an attempt for callers."""

    attempt_id: str
    status: str
    gateway: str
    kind: str
    amount: Decimal
    currency: str
    failure_reason: Optional[str]
    external_reference: Optional[str]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]
    payment_id: Optional[str] = None

    @classmethod
    def of(cls, attempt: PaymentAttempt, payment_id: Optional[str] = None) -> "AttemptStatusView":
        return cls(
            attempt_id=attempt.id,
            status=attempt.status,
            gateway=attempt.gateway,
            kind=attempt.kind,
            amount=attempt.amount,
            currency=attempt.currency,
            failure_reason=attempt.failure_reason,
            external_reference=attempt.external_reference,
            created_at=attempt.created_at,
            completed_at=attempt.completed_at,
            payment_id=payment_id,
        )


def _coerce_enum(enum_cls: Any, value: Any, label: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise PaymentValidationError(f"Unknown {label}: {value}") from None


class PaymentOrchestrator:
    """
    Facade over the ledger, gateways, reconciliation and activation.

    Database sessions are short and never held across a gateway call.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        ledger: PaymentLedger,
        activator: EntitlementActivator,
        reconciliation: ReconciliationEngine,
        memberships: MembershipStore,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.gateways = gateways
        self.ledger = ledger
        self.activator = activator
        self.reconciliation = reconciliation
        self.memberships = memberships

    @staticmethod
    def _validate(command: InitiatePaymentCommand) -> None:
        """
        Validate payment request parameters.

        Raises:
            PaymentValidationError: If validation fails
        """
        if not command.user_id:
            raise PaymentValidationError("User ID is required")

        if command.currency not in CURRENCY_EXPONENTS:
            raise PaymentValidationError(
                f"Unsupported currency {command.currency}. "
                f"Must be one of: {sorted(CURRENCY_EXPONENTS)}"
            )

        amount = Decimal(command.amount)
        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")
        money = Money(amount=amount, currency=command.currency)
        if money.quantized() != amount:
            raise PaymentValidationError(
                f"Amount {amount} has more precision than {command.currency} allows"
            )

        gateway: Gateway = command.gateway  # type: ignore[assignment]
        contact = command.payer_contact.replace(" ", "")
        if gateway.is_mobile_money:
            if not PHONE_PATTERN.match(contact):
                raise PaymentValidationError("Invalid phone number", code="invalid_phone")
        elif not (PHONE_PATTERN.match(contact) or EMAIL_PATTERN.match(contact)):
            raise PaymentValidationError(
                "Invalid phone number or e-mail address", code="invalid_contact"
            )

        metadata = command.metadata
        if command.kind is EntitlementKind.MEMBERSHIP:
            if metadata.get("tier") not in MEMBERSHIP_TIERS:
                raise PaymentValidationError(
                    f"Membership tier must be one of: {list(MEMBERSHIP_TIERS)}"
                )
            if metadata.get("plan") not in PLAN_DURATIONS:
                raise PaymentValidationError(
                    f"Membership plan must be one of: {list(PLAN_DURATIONS)}"
                )
        elif command.kind is EntitlementKind.TOKENS:
            service_type = metadata.get("service_type")
            if service_type not in TOKEN_VALUES:
                raise PaymentValidationError(
                    f"Service type must be one of: {list(TOKEN_VALUES)}"
                )
            if tokens_for(service_type, amount, metadata.get("tokens")) < 1:
                raise PaymentValidationError("Amount does not buy a single token")
        elif command.kind is EntitlementKind.LISTING_FEE:
            if not metadata.get("listing_id"):
                raise PaymentValidationError("listing_id is required for a listing fee")

    async def _reject_duplicates(self, db: AsyncSession, command: InitiatePaymentCommand) -> None:
        """
        Refuse purchases of an entitlement the user already holds.

        A membership is a duplicate unless it upgrades the active tier in the
        same adult/child slot. An upgrade is allowed and, once paid, supersedes
        (cancels) the current membership.
        """
        if command.kind is EntitlementKind.MEMBERSHIP:
            is_child = bool(command.metadata.get("is_child", False))
            active = await self.memberships.get_active_subscription(
                db, command.user_id, is_child
            )
            if active is not None and TIER_RANK.get(active.tier, -1) >= TIER_RANK[
                command.metadata["tier"]
            ]:
                raise DuplicatePurchase(
                    f"User already holds an active {active.tier} membership"
                )
        elif command.kind is EntitlementKind.LISTING_FEE:
            result = await db.execute(
                select(ListingFee.id).where(
                    ListingFee.listing_id == command.metadata["listing_id"]
                )
            )
            if result.first() is not None:
                raise DuplicatePurchase("Listing fee already paid")

    @staticmethod
    def _replay_initiation(
        attempt: PaymentAttempt, command: InitiatePaymentCommand
    ) -> InitiationResponse:
        """
        Answer a repeated initiate carrying an attempt id that is already recorded.

        Raises:
            StorageConflict: If the id belongs to a different payment
        """
        same_payment = (
            attempt.user_id == command.user_id
            and Decimal(attempt.amount) == Decimal(command.amount)
            and attempt.currency == command.currency
            and attempt.gateway == command.gateway.value
            and attempt.kind == command.kind.value
        )
        if not same_payment:
            raise StorageConflict(
                f"Attempt id {attempt.id} is already used by another payment",
                code="attempt_id_in_use",
            )
        metadata = attempt.attempt_metadata or {}
        logger.info("payment_initiation_replayed", attempt_id=attempt.id, status=attempt.status)
        return InitiationResponse(
            attempt_id=attempt.id,
            status=attempt.status,
            redirect_url=metadata.get("redirect_url"),
            token=metadata.get("gateway_token"),
        )

    async def initiate(self, command: InitiatePaymentCommand) -> InitiationResponse:
        """
        Start a payment with the chosen gateway.

        Flow:
        1. Validate input
        2. Replay a known caller-chosen attempt id, reject duplicate purchases
        3. Record a pending attempt (committed)
        4. Call the gateway (retried inside the adapter)
        5. Store the gateway reference

        Raises:
            PaymentValidationError: If the request is malformed
            DuplicatePurchase: If the entitlement is already held
            GatewayError: If the gateway refused or could not be reached
            StorageConflict: If a caller-chosen attempt id belongs to another payment
        """
        start_time = time.time()
        command.currency = str(command.currency).upper()
        command.gateway = _coerce_enum(Gateway, command.gateway, "gateway")
        command.kind = _coerce_enum(EntitlementKind, command.kind, "payment kind")
        self._validate(command)

        gateway: Gateway = command.gateway
        kind: EntitlementKind = command.kind
        adapter = self.gateways.get(gateway)
        if adapter is None:
            raise PaymentValidationError(
                f"Gateway {gateway.value} is not available", code="gateway_disabled"
            )

        if not settles_exactly(Decimal(command.amount), adapter.amount_decimals):
            raise PaymentValidationError(
                f"{gateway.value} only settles amounts with "
                f"{adapter.amount_decimals} decimal places",
                code="unsupported_amount",
            )

        log = logger.bind(user_id=command.user_id, gateway=gateway.value, kind=kind.value)

        async with self.session_factory() as db:
            if command.attempt_id:
                existing = await self.ledger.get(db, command.attempt_id)
                if existing is not None:
                    return self._replay_initiation(existing, command)
            await self._reject_duplicates(db, command)
            try:
                attempt = await self.ledger.create_attempt(
                    db,
                    AttemptSpec(
                        user_id=command.user_id,
                        amount=Decimal(command.amount),
                        currency=command.currency,
                        gateway=gateway,
                        kind=kind,
                        metadata={
                            **command.metadata,
                            "payer_contact": command.payer_contact,
                            "description": command.description,
                        },
                        attempt_id=command.attempt_id,
                    ),
                )
                await db.commit()
            except IntegrityError:
                # Same caller-chosen id submitted concurrently
                await db.rollback()
                existing = (
                    await self.ledger.get(db, command.attempt_id) if command.attempt_id else None
                )
                if existing is None:
                    raise
                return self._replay_initiation(existing, command)
            attempt_id = attempt.id

        log = log.bind(attempt_id=attempt_id)
        try:
            result = await adapter.initiate(
                order_id=attempt_id,
                amount=Decimal(command.amount),
                currency=command.currency,
                payer_contact=command.payer_contact.replace(" ", ""),
                description=command.description or f"{kind.value} {attempt_id}",
                callback_url=self.settings.callback_url(gateway.value),
            )
        except GatewayError as e:
            if isinstance(e, GatewayRejected):
                reason = FailureReason.REJECTED
            else:
                reason = FailureReason.GATEWAY_ERROR
            async with self.session_factory() as db:
                await self.ledger.transition(
                    db,
                    attempt_id,
                    AttemptStatus.FAILED,
                    failure_reason=reason,
                    source="initiate",
                )
                await db.commit()
            metrics.record_gateway_error(gateway.value, e.code)
            metrics.record_initiation(gateway.value, kind.value, "failed", time.time() - start_time)
            log.warning("payment_initiation_failed", error_code=e.code, error=str(e))
            raise

        async with self.session_factory() as db:
            attempt = await self.ledger.set_external_reference(
                db, attempt_id, result.external_reference
            )
            attempt.attempt_metadata = {
                **(attempt.attempt_metadata or {}),
                "redirect_url": result.redirect_url,
                "gateway_token": result.token,
            }
            await db.commit()
            status = attempt.status

        metrics.record_initiation(gateway.value, kind.value, "pending", time.time() - start_time)
        log.info("payment_initiated", external_reference=result.external_reference)
        return InitiationResponse(
            attempt_id=attempt_id,
            status=status,
            redirect_url=result.redirect_url,
            token=result.token,
        )

    async def handle_webhook(
        self, gateway: Union[Gateway, str], payload: Mapping[str, Any]
    ) -> WebhookOutcome:
        """
        Apply a gateway notification.

        Raises:
            InvalidCallback: If the gateway is unknown or the payload is malformed
        """
        if not isinstance(gateway, Gateway):
            try:
                gateway = Gateway(gateway)
            except ValueError:
                raise InvalidCallback(f"Unknown gateway {gateway}", str(gateway)) from None
        return await self.reconciliation.handle_webhook(gateway, payload)

    async def check_status(self, attempt_id: str) -> AttemptStatusView:
        """
        Current state of an attempt.

        Raises:
            AttemptNotFound: If no attempt has this id
        """
        attempt = await self.reconciliation.check_status(attempt_id)
        async with self.session_factory() as db:
            payment = await self.activator.find_payment(db, attempt_id)
        return AttemptStatusView.of(attempt, payment.id if payment else None)

    async def cancel(self, attempt_id: str) -> AttemptStatusView:
        """
        Abandon a pending attempt.

        Raises:
            AttemptNotFound: If no attempt has this id
            AttemptAlreadyFinal: If the attempt already completed or failed
        """
        async with self.session_factory() as db:
            result = await self.ledger.transition(
                db,
                attempt_id,
                AttemptStatus.FAILED,
                failure_reason=FailureReason.CANCELLED,
                source="cancel",
            )
            await db.commit()

        if not result.changed:
            raise AttemptAlreadyFinal(
                f"Payment attempt {attempt_id} is already {result.attempt.status}"
            )
        logger.info("payment_cancelled", attempt_id=attempt_id)
        return AttemptStatusView.of(result.attempt)


def build_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateways: GatewayRegistry,
    notifier: Optional[Notifier] = None,
    clock: Clock = utcnow,
) -> PaymentOrchestrator:
    """Wire the orchestrator with its SQL-backed collaborators."""
    ledger = PaymentLedger(clock)
    notifier = notifier or LoggingNotifier()
    memberships = SqlMembershipStore(clock)
    activator = EntitlementActivator(
        session_factory=session_factory,
        ledger=ledger,
        tokens=TokenLedger(clock),
        memberships=memberships,
        referrals=SqlReferralStore(clock),
        notifier=notifier,
        commission_rate=settings.commission_rate,
        clock=clock,
    )
    reconciliation = ReconciliationEngine(
        session_factory, ledger, gateways, activator, notifier
    )
    return PaymentOrchestrator(
        settings=settings,
        session_factory=session_factory,
        gateways=gateways,
        ledger=ledger,
        activator=activator,
        reconciliation=reconciliation,
        memberships=memberships,
    )
