"""
Payment attempt ledger.

Sole owner of attempt state. Every transition is a single conditional
``UPDATE ... WHERE status = 'pending'``: concurrent webhook and poll paths
race on the row, exactly one wins, and the loser observes a no-op.
Methods never commit; the caller owns the unit of work.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from memberpay.core.errors import AttemptNotFound
from memberpay.core.types import (
    AttemptStatus,
    Clock,
    EntitlementKind,
    FailureReason,
    Gateway,
    utcnow,
)
from memberpay.database.models import Payment, PaymentAttempt, PaymentEvent, new_id
from memberpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AttemptSpec:
    """Everything needed to record a new attempt."""

    user_id: str
    amount: Decimal
    currency: str
    gateway: Gateway
    kind: EntitlementKind
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt_id: Optional[str] = None


@dataclass(frozen=True)
class TransitionResult:
    """Attempt after a transition request; ``changed`` is False for no-ops."""

    attempt: PaymentAttempt
    changed: bool


class PaymentLedger:
    """Persistence and state transitions of payment attempts."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def record_event(
        self,
        db: AsyncSession,
        attempt_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        """
        Record an attempt event for audit trail.

        Args:
            db: Database session
            attempt_id: Attempt the event belongs to
            event_type: Event type (e.g. 'attempt.completed')
            event_data: Event data
            correlation_id: Correlation ID for tracing
        """
        db.add(
            PaymentEvent(
                attempt_id=attempt_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id or uuid.uuid4().hex,
                created_at=self.clock(),
            )
        )

    async def create_attempt(
        self,
        db: AsyncSession,
        spec: AttemptSpec,
        correlation_id: Optional[str] = None,
    ) -> PaymentAttempt:
        """
        Record a new pending attempt.

        Returns:
            PaymentAttempt: The flushed attempt
        """
        now = self.clock()
        attempt = PaymentAttempt(
            id=spec.attempt_id or new_id(),
            user_id=spec.user_id,
            amount=spec.amount,
            currency=spec.currency,
            gateway=spec.gateway.value,
            kind=spec.kind.value,
            status=AttemptStatus.PENDING.value,
            attempt_metadata=dict(spec.metadata),
            created_at=now,
            updated_at=now,
        )
        db.add(attempt)
        await db.flush()

        await self.record_event(
            db,
            attempt.id,
            "attempt.created",
            {
                "user_id": spec.user_id,
                "amount": str(spec.amount),
                "currency": spec.currency,
                "gateway": spec.gateway.value,
                "kind": spec.kind.value,
            },
            correlation_id,
        )
        logger.info(
            "attempt_created",
            attempt_id=attempt.id,
            user_id=spec.user_id,
            gateway=spec.gateway.value,
            kind=spec.kind.value,
            amount=str(spec.amount),
            currency=spec.currency,
        )
        return attempt

    async def get(self, db: AsyncSession, attempt_id: str) -> Optional[PaymentAttempt]:
        return await db.get(PaymentAttempt, attempt_id, populate_existing=True)

    async def require(self, db: AsyncSession, attempt_id: str) -> PaymentAttempt:
        """
        Load an attempt or fail.

        Raises:
            AttemptNotFound: If no attempt has this id
        """
        attempt = await self.get(db, attempt_id)
        if attempt is None:
            raise AttemptNotFound(f"Payment attempt {attempt_id} not found")
        return attempt

    async def set_external_reference(
        self, db: AsyncSession, attempt_id: str, reference: str
    ) -> PaymentAttempt:
        """
        Store the gateway's reference for an attempt, once.

        A second, different value is logged and discarded; the first
        reference stays authoritative.
        """
        result = await db.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.external_reference.is_(None),
            )
            .values(external_reference=reference, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        attempt = await self.require(db, attempt_id)

        if result.rowcount == 1:
            await self.record_event(
                db, attempt_id, "attempt.external_reference_set", {"reference": reference}
            )
        elif attempt.external_reference != reference:
            logger.error(
                "external_reference_conflict",
                attempt_id=attempt_id,
                stored_reference=attempt.external_reference,
                rejected_reference=reference,
            )
        return attempt

    async def transition(
        self,
        db: AsyncSession,
        attempt_id: str,
        status: AttemptStatus,
        settled_reference: Optional[str] = None,
        failure_reason: Optional[FailureReason] = None,
        source: str = "webhook",
        correlation_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move a pending attempt to a terminal status.

        Args:
            db: Database session
            attempt_id: Attempt to transition
            status: COMPLETED or FAILED
            settled_reference: Gateway settlement id, if known
            failure_reason: Why the attempt failed
            source: What triggered the transition (webhook, poll, ...)

        Returns:
            TransitionResult: changed is False when the attempt was already terminal

        Raises:
            AttemptNotFound: If no attempt has this id
            ValueError: If status is not terminal
        """
        if not status.is_terminal:
            raise ValueError("Attempts can only transition to a terminal status")

        now = self.clock()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        if status is AttemptStatus.COMPLETED:
            values["completed_at"] = now
        if settled_reference:
            values["settled_reference"] = settled_reference
        if failure_reason is not None:
            values["failure_reason"] = failure_reason.value

        result = await db.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.status == AttemptStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        attempt = await self.require(db, attempt_id)

        if changed:
            event_data: Dict[str, Any] = {"source": source}
            if settled_reference:
                event_data["settled_reference"] = settled_reference
            if failure_reason is not None:
                event_data["failure_reason"] = failure_reason.value
            await self.record_event(
                db, attempt_id, f"attempt.{status.value}", event_data, correlation_id
            )
            metrics.record_transition(status.value, source)
            logger.info(
                "attempt_transitioned",
                attempt_id=attempt_id,
                status=status.value,
                failure_reason=failure_reason.value if failure_reason else None,
                source=source,
            )
        else:
            logger.info(
                "attempt_transition_noop",
                attempt_id=attempt_id,
                requested_status=status.value,
                current_status=attempt.status,
                source=source,
            )
        return TransitionResult(attempt=attempt, changed=changed)

    async def find_by_reference(
        self, db: AsyncSession, gateway: Gateway, reference: str
    ) -> Optional[PaymentAttempt]:
        """
        Resolve a gateway reference to an attempt.

        Matches the stored external reference first, then the attempt id
        (sent to every gateway as the merchant order id), so a webhook that
        outruns ``set_external_reference`` still resolves.
        """
        result = await db.execute(
            select(PaymentAttempt).where(
                PaymentAttempt.gateway == gateway.value,
                PaymentAttempt.external_reference == reference,
            )
        )
        attempt = result.scalar_one_or_none()
        if attempt is not None:
            return attempt

        result = await db.execute(
            select(PaymentAttempt).where(
                PaymentAttempt.gateway == gateway.value,
                PaymentAttempt.id == reference,
            )
        )
        return result.scalar_one_or_none()

    async def find_stale_pending(
        self, db: AsyncSession, older_than: datetime, limit: int = 100
    ) -> List[PaymentAttempt]:
        """Pending attempts created before ``older_than``, oldest first."""
        result = await db.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.status == AttemptStatus.PENDING.value,
                PaymentAttempt.created_at < older_than,
            )
            .order_by(PaymentAttempt.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_unactivated(self, db: AsyncSession, limit: int = 100) -> List[PaymentAttempt]:
        """Completed attempts whose entitlement was never granted."""
        result = await db.execute(
            select(PaymentAttempt)
            .outerjoin(Payment, Payment.payment_attempt_id == PaymentAttempt.id)
            .where(
                PaymentAttempt.status == AttemptStatus.COMPLETED.value,
                Payment.id.is_(None),
            )
            .order_by(PaymentAttempt.completed_at)
            .limit(limit)
        )
        return list(result.scalars().all())
