"""
Reconciliation of gateway outcomes with the ledger.

Webhooks, status polls and the expiry sweeper all converge on ``apply``,
which is idempotent: the ledger's conditional transition decides the one
winner, and activation is safe to repeat.
"""
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memberpay.core.entitlements import EntitlementActivator
from memberpay.core.errors import (
    ActivationFailed,
    AmountMismatch,
    GatewayError,
    GatewayUnavailable,
    InvalidCallback,
)
from memberpay.core.ledger import PaymentLedger, TransitionResult
from memberpay.core.notifications import Notifier
from memberpay.core.types import AttemptStatus, FailureReason, Gateway, Money, Outcome
from memberpay.database.models import PaymentAttempt
from memberpay.integrations.gateways import GatewayAdapter, GatewayRegistry
from memberpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    """
    What a webhook delivery did.

    ``result`` is one of: completed, failed, pending, duplicate, conflict,
    unknown_attempt, amount_mismatch.
    """

    result: str
    attempt_id: Optional[str] = None
    status: Optional[str] = None
    activated: Optional[bool] = None


@dataclass(frozen=True)
class ApplyResult:
    transition: TransitionResult
    conflict: bool
    activated: Optional[bool]

    @property
    def attempt(self) -> PaymentAttempt:
        return self.transition.attempt


@dataclass(frozen=True)
class SweepReport:
    expired: int = 0
    settled: int = 0
    skipped: int = 0
    activated: int = 0
    activation_failures: int = 0


class ReconciliationEngine:
    """Applies gateway-reported outcomes to payment attempts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: PaymentLedger,
        gateways: GatewayRegistry,
        activator: EntitlementActivator,
        notifier: Notifier,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.gateways = gateways
        self.activator = activator
        self.notifier = notifier

    def adapter(self, gateway: Gateway) -> GatewayAdapter:
        try:
            return self.gateways[gateway]
        except KeyError:
            raise InvalidCallback(
                f"Gateway {gateway.value} is not enabled", gateway.value
            ) from None

    async def handle_webhook(
        self, gateway: Gateway, payload: Mapping[str, Any]
    ) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Raises:
            InvalidCallback: If the payload fails validation (never processed)
        """
        start_time = time.time()
        adapter = self.adapter(gateway)
        try:
            callback = adapter.parse_webhook(payload)
        except InvalidCallback:
            metrics.record_webhook(gateway.value, "invalid", time.time() - start_time)
            logger.warning("webhook_rejected", gateway=gateway.value)
            raise

        log = logger.bind(gateway=gateway.value, reference=callback.external_reference)

        async with self.session_factory() as db:
            attempt = await self.ledger.find_by_reference(
                db, gateway, callback.external_reference
            )
        if attempt is None:
            log.warning("webhook_unknown_attempt")
            metrics.record_webhook(gateway.value, "unknown_attempt", time.time() - start_time)
            return WebhookOutcome(result="unknown_attempt")

        log = log.bind(attempt_id=attempt.id)
        outcome = callback.outcome
        amount = callback.amount
        settled_reference = callback.settled_reference

        if outcome is Outcome.SUCCESS and amount is None:
            # Success without an amount is confirmed with the gateway before it is trusted
            status = await adapter.verify_status(attempt.external_reference or attempt.id)
            outcome = status.outcome
            amount = status.amount
            settled_reference = settled_reference or status.settled_reference
            log.info("webhook_amount_verified", outcome=outcome.value)

        if outcome is Outcome.PENDING:
            log.info("webhook_pending")
            metrics.record_webhook(gateway.value, "pending", time.time() - start_time)
            return WebhookOutcome(result="pending", attempt_id=attempt.id, status=attempt.status)

        try:
            applied = await self.apply(attempt, outcome, amount, settled_reference, "webhook")
        except AmountMismatch:
            metrics.record_webhook(gateway.value, "amount_mismatch", time.time() - start_time)
            async with self.session_factory() as db:
                current = await self.ledger.require(db, attempt.id)
            return WebhookOutcome(
                result="amount_mismatch",
                attempt_id=attempt.id,
                status=current.status,
            )

        if applied.conflict:
            result = "conflict"
        elif not applied.transition.changed:
            result = "duplicate"
        else:
            result = applied.attempt.status

        metrics.record_webhook(gateway.value, result, time.time() - start_time)
        log.info("webhook_processed", result=result, status=applied.attempt.status)
        return WebhookOutcome(
            result=result,
            attempt_id=attempt.id,
            status=applied.attempt.status,
            activated=applied.activated,
        )

    async def apply(
        self,
        attempt: PaymentAttempt,
        outcome: Outcome,
        amount: Optional[Decimal],
        settled_reference: Optional[str],
        source: str,
    ) -> ApplyResult:
        """
        Apply a terminal gateway outcome to an attempt.

        Raises:
            AmountMismatch: If a success reports a settled amount other than the
                recorded one (the attempt is failed first)
        """
        async with self.session_factory() as db:
            if outcome is Outcome.SUCCESS:
                expected = Money(amount=attempt.amount, currency=attempt.currency)
                if not expected.matches(amount):
                    await self._fail_on_mismatch(
                        db, attempt, expected, amount, settled_reference, source
                    )
                    raise AmountMismatch(attempt.id, expected.amount, amount)
                target, reason = AttemptStatus.COMPLETED, None
            else:
                target, reason = AttemptStatus.FAILED, FailureReason.GATEWAY_FAILURE

            transition = await self.ledger.transition(
                db, attempt.id, target, settled_reference, reason, source
            )
            conflict = (
                not transition.changed and transition.attempt.status != target.value
            )
            if conflict:
                logger.error(
                    "attempt_outcome_conflict",
                    attempt_id=attempt.id,
                    gateway=attempt.gateway,
                    recorded_status=transition.attempt.status,
                    reported_outcome=outcome.value,
                    source=source,
                )
                await self.ledger.record_event(
                    db,
                    attempt.id,
                    "attempt.outcome_conflict",
                    {
                        "recorded_status": transition.attempt.status,
                        "reported_outcome": outcome.value,
                        "settled_reference": settled_reference,
                        "source": source,
                    },
                )
                metrics.record_outcome_conflict(attempt.gateway)
            await db.commit()

        if (
            conflict
            and outcome is Outcome.SUCCESS
            and transition.attempt.status == AttemptStatus.FAILED.value
        ):
            await self._alert_paid_after_failure(transition.attempt, settled_reference, source)

        activated = None
        if transition.attempt.status == AttemptStatus.COMPLETED.value:
            activated = await self.ensure_activated(attempt.id)
        return ApplyResult(transition=transition, conflict=conflict, activated=activated)

    async def _alert_paid_after_failure(
        self, attempt: PaymentAttempt, settled_reference: Optional[str], source: str
    ) -> None:
        """The gateway took the money for an attempt recorded as failed."""
        logger.critical(
            "payment_settled_after_failure",
            attempt_id=attempt.id,
            gateway=attempt.gateway,
            failure_reason=attempt.failure_reason,
            settled_reference=settled_reference,
            source=source,
        )
        await self.notifier.alert_operator(
            "Gateway reported success for a payment already recorded as failed",
            {
                "attempt_id": attempt.id,
                "user_id": attempt.user_id,
                "gateway": attempt.gateway,
                "amount": str(attempt.amount),
                "currency": attempt.currency,
                "failure_reason": attempt.failure_reason,
                "settled_reference": settled_reference,
                "source": source,
            },
        )

    async def _fail_on_mismatch(
        self,
        db: AsyncSession,
        attempt: PaymentAttempt,
        expected: Money,
        reported: Optional[Decimal],
        settled_reference: Optional[str],
        source: str,
    ) -> None:
        transition = await self.ledger.transition(
            db,
            attempt.id,
            AttemptStatus.FAILED,
            settled_reference,
            FailureReason.AMOUNT_MISMATCH,
            source,
        )
        await self.ledger.record_event(
            db,
            attempt.id,
            "attempt.amount_mismatch",
            {
                "expected": str(expected.amount),
                "reported": str(reported) if reported is not None else None,
                "currency": expected.currency,
                "settled_reference": settled_reference,
                "source": source,
                "transitioned": transition.changed,
            },
        )
        await db.commit()
        metrics.record_amount_mismatch(attempt.gateway)
        logger.error(
            "attempt_amount_mismatch",
            attempt_id=attempt.id,
            gateway=attempt.gateway,
            expected=str(expected.amount),
            reported=str(reported) if reported is not None else None,
            status=transition.attempt.status,
        )

    async def ensure_activated(self, attempt_id: str) -> bool:
        """
        Activate a completed attempt, reporting failure instead of raising.

        The operator has already been alerted by the activator; the attempt
        is picked up again by the next replay, poll or sweep.
        """
        try:
            await self.activator.activate(attempt_id)
        except ActivationFailed as e:
            logger.warning("activation_deferred", attempt_id=attempt_id, reason=e.reason)
            return False
        return True

    async def check_status(self, attempt_id: str) -> PaymentAttempt:
        """
        Current state of an attempt, asking the gateway while it is pending.

        Raises:
            AttemptNotFound: If no attempt has this id
            AmountMismatch: If the gateway settled a different amount
            GatewayError: If the gateway could not be asked
        """
        async with self.session_factory() as db:
            attempt = await self.ledger.require(db, attempt_id)
            payment = await self.activator.find_payment(db, attempt_id)

        if attempt.status == AttemptStatus.COMPLETED.value:
            if payment is None:
                logger.info("activation_resumed", attempt_id=attempt_id, source="poll")
                await self.ensure_activated(attempt_id)
            return attempt
        if attempt.status == AttemptStatus.FAILED.value:
            return attempt

        gateway = Gateway(attempt.gateway)
        status = await self.adapter(gateway).verify_status(
            attempt.external_reference or attempt.id
        )
        metrics.record_status_check(gateway.value, status.outcome.value)
        if status.outcome is Outcome.PENDING:
            return attempt

        applied = await self.apply(
            attempt, status.outcome, status.amount, status.settled_reference, "poll"
        )
        return applied.attempt

    async def sweep_stale(self, older_than: datetime, limit: int = 100) -> SweepReport:
        """
        Settle or expire pending attempts created before ``older_than``.

        Each stale attempt is checked with its gateway first so a payment
        that did go through is completed, not expired. Attempts whose
        gateway cannot be reached are left for the next sweep; a gateway that
        answers with an error (unknown transaction, unreadable status) does not
        hold the attempt back from expiring.
        """
        async with self.session_factory() as db:
            stale = await self.ledger.find_stale_pending(db, older_than, limit)

        expired = settled = skipped = 0
        for attempt in stale:
            gateway = Gateway(attempt.gateway)
            adapter = self.gateways.get(gateway)
            outcome = Outcome.PENDING
            if adapter is not None:
                try:
                    status = await adapter.verify_status(attempt.external_reference or attempt.id)
                    outcome = status.outcome
                except GatewayUnavailable as e:
                    logger.warning(
                        "sweep_status_unavailable",
                        attempt_id=attempt.id,
                        gateway=gateway.value,
                        error_code=e.code,
                    )
                    skipped += 1
                    continue
                except GatewayError as e:
                    # The gateway answered but knows no usable status: expire
                    logger.warning(
                        "sweep_status_unknown",
                        attempt_id=attempt.id,
                        gateway=gateway.value,
                        error_code=e.code,
                        error=str(e),
                    )

            if outcome is not Outcome.PENDING:
                try:
                    await self.apply(
                        attempt, outcome, status.amount, status.settled_reference, "sweeper"
                    )
                except AmountMismatch as e:
                    logger.warning(
                        "sweep_amount_mismatch", attempt_id=attempt.id, reported=str(e.reported)
                    )
                settled += 1
                continue

            async with self.session_factory() as db:
                transition = await self.ledger.transition(
                    db,
                    attempt.id,
                    AttemptStatus.FAILED,
                    failure_reason=FailureReason.EXPIRED,
                    source="sweeper",
                )
                await db.commit()
            if transition.changed:
                expired += 1

        return SweepReport(expired=expired, settled=settled, skipped=skipped)

    async def resume_activations(self, limit: int = 100) -> SweepReport:
        """Retry activation of completed attempts that have no Payment."""
        async with self.session_factory() as db:
            pending = await self.ledger.find_unactivated(db, limit)

        activated = failed = 0
        for attempt in pending:
            if await self.ensure_activated(attempt.id):
                activated += 1
            else:
                failed += 1
        return SweepReport(activated=activated, activation_failures=failed)
