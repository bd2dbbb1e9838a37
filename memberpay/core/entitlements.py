"""
Entitlement activation.

Turns a completed payment attempt into what the user bought, exactly once:

1. Payment row (idempotency guard)
2. Membership, token credit or listing fee confirmation
3. Referral commission

All three commit together or not at all. A failed activation leaves the
attempt ``completed`` with no Payment row, which is what every later replay,
poll and sweeper pass looks for to resume it.
"""
import asyncio
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Set, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memberpay.core.collaborators import MembershipStore, ReferralStore
from memberpay.core.errors import ActivationFailed, StorageConflict
from memberpay.core.ledger import PaymentLedger
from memberpay.core.notifications import Notifier
from memberpay.core.tokens import TokenLedger, tokens_for
from memberpay.core.types import (
    AttemptStatus,
    Clock,
    EntitlementKind,
    PaymentStatus,
    utcnow,
)
from memberpay.database.models import (
    Commission,
    ListingFee,
    Payment,
    PaymentAttempt,
    Subscription,
)
from memberpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MEMBERSHIP_TIERS = ("essential", "premium", "elite")

# None means the subscription never ends
PLAN_DURATIONS: Dict[str, Optional[timedelta]] = {
    "monthly": timedelta(days=30),
    "quarterly": timedelta(days=90),
    "semi_annual": timedelta(days=182),
    "yearly": timedelta(days=365),
    "one_time": timedelta(days=365),
    "lifetime": None,
}

NON_RECURRING_PLANS = ("one_time", "lifetime")


class EntitlementActivator:
    """Grants entitlements for completed payments."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: PaymentLedger,
        tokens: TokenLedger,
        memberships: MembershipStore,
        referrals: ReferralStore,
        notifier: Notifier,
        commission_rate: Decimal = Decimal("0.10"),
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.tokens = tokens
        self.memberships = memberships
        self.referrals = referrals
        self.notifier = notifier
        self.commission_rate = commission_rate
        self.clock = clock
        self._background: Set["asyncio.Task[None]"] = set()

    async def find_payment(self, db: AsyncSession, attempt_id: str) -> Optional[Payment]:
        result = await db.execute(
            select(Payment).where(Payment.payment_attempt_id == attempt_id)
        )
        return result.scalar_one_or_none()

    async def activate(self, attempt_id: str) -> Payment:
        """
        Grant the entitlement bought by a completed attempt.

        Safe to call any number of times; every call after the first
        returns the existing Payment.

        Raises:
            ActivationFailed: If the entitlement could not be granted
        """
        async with self.session_factory() as db:
            attempt = await self.ledger.require(db, attempt_id)
            if attempt.status != AttemptStatus.COMPLETED.value:
                raise ActivationFailed(attempt_id, f"attempt is {attempt.status}")
            context = {
                "attempt_id": attempt.id,
                "user_id": attempt.user_id,
                "kind": attempt.kind,
                "amount": str(attempt.amount),
                "currency": attempt.currency,
            }

            try:
                existing = await self.find_payment(db, attempt_id)
                if existing is not None:
                    logger.info(
                        "activation_replay", attempt_id=attempt_id, payment_id=existing.id
                    )
                    return existing

                payment, created = await self._insert_payment(db, attempt)
                if not created:
                    return payment

                await self._grant(db, attempt, payment)
                await self._pay_commission(db, attempt, payment)
                await self.ledger.record_event(
                    db,
                    attempt_id,
                    "entitlement.activated",
                    {"payment_id": payment.id, "kind": attempt.kind},
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                await self._on_failure(context, e)
                raise ActivationFailed(attempt_id, str(e)) from e

        metrics.record_activation(attempt.kind)
        logger.info(
            "entitlement_activated",
            attempt_id=attempt_id,
            payment_id=payment.id,
            kind=attempt.kind,
            user_id=attempt.user_id,
        )
        self._schedule_notification(
            attempt.user_id,
            "payment.completed",
            {"attempt_id": attempt_id, "payment_id": payment.id, "kind": attempt.kind},
        )
        return payment

    async def _insert_payment(
        self, db: AsyncSession, attempt: PaymentAttempt
    ) -> Tuple[Payment, bool]:
        """
        Insert the Payment row inside a savepoint.

        A unique violation means a concurrent activation won; its row is
        returned with ``created`` False.
        """
        now = self.clock()
        payment = Payment(
            user_id=attempt.user_id,
            payment_attempt_id=attempt.id,
            amount=attempt.amount,
            currency=attempt.currency,
            status=PaymentStatus.COMPLETED.value,
            payment_method=attempt.gateway,
            payment_reference=(
                attempt.settled_reference or attempt.external_reference or attempt.id
            ),
            paid_at=attempt.completed_at or now,
            payment_metadata=dict(attempt.attempt_metadata or {}),
            created_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(payment)
        except IntegrityError as e:
            conflict = StorageConflict(f"Payment for attempt {attempt.id} already recorded")
            existing = await self.find_payment(db, attempt.id)
            if existing is None:
                raise conflict from e
            logger.info(
                "payment_insert_conflict",
                attempt_id=attempt.id,
                payment_id=existing.id,
                error_code=conflict.code,
            )
            return existing, False
        return payment, True

    async def _grant(self, db: AsyncSession, attempt: PaymentAttempt, payment: Payment) -> None:
        kind = EntitlementKind(attempt.kind)
        metadata: Dict[str, Any] = attempt.attempt_metadata or {}

        if kind is EntitlementKind.MEMBERSHIP:
            await self._activate_membership(db, attempt, payment, metadata)
        elif kind is EntitlementKind.TOKENS:
            service_type = metadata["service_type"]
            count = tokens_for(service_type, attempt.amount, metadata.get("tokens"))
            await self.tokens.credit(
                db,
                attempt.user_id,
                service_type,
                count,
                payment_id=payment.id,
                payment_method=attempt.gateway,
                reference=payment.payment_reference,
            )
        elif kind is EntitlementKind.LISTING_FEE:
            db.add(
                ListingFee(
                    listing_id=metadata["listing_id"],
                    user_id=attempt.user_id,
                    payment_id=payment.id,
                    amount=attempt.amount,
                    confirmed_at=self.clock(),
                )
            )
            await db.flush()

    async def _activate_membership(
        self,
        db: AsyncSession,
        attempt: PaymentAttempt,
        payment: Payment,
        metadata: Dict[str, Any],
    ) -> Subscription:
        now = self.clock()
        tier = metadata["tier"]
        plan = metadata["plan"]
        is_child = bool(metadata.get("is_child", False))

        prior = await self.memberships.get_active_subscription(db, attempt.user_id, is_child)
        if prior is not None:
            prior.status = "cancelled"
            prior.cancelled_at = now
            prior.updated_at = now
            # Flushed first: the partial unique index admits one active row
            await db.flush()
            logger.info(
                "subscription_superseded",
                user_id=attempt.user_id,
                subscription_id=prior.id,
                tier=prior.tier,
            )

        duration = PLAN_DURATIONS[plan]
        subscription = Subscription(
            user_id=attempt.user_id,
            plan=plan,
            tier=tier,
            is_child=is_child,
            status="active",
            start_date=now,
            end_date=now + duration if duration is not None else None,
            is_recurring=plan not in NON_RECURRING_PLANS,
            last_payment_id=payment.id,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
        await db.flush()
        payment.subscription_id = subscription.id

        if not is_child:
            await self.memberships.set_membership_tier(db, attempt.user_id, tier)
        return subscription

    async def _pay_commission(
        self, db: AsyncSession, attempt: PaymentAttempt, payment: Payment
    ) -> Optional[Commission]:
        code = (attempt.attempt_metadata or {}).get("referral_code")
        if not code:
            return None

        referrer_id = await self.referrals.find_referrer(db, code)
        if referrer_id is None or referrer_id == attempt.user_id:
            logger.info(
                "commission_skipped",
                attempt_id=attempt.id,
                referral_code=code,
                reason="self_referral" if referrer_id else "unknown_code",
            )
            return None

        amount = (attempt.amount * self.commission_rate).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        prior = await db.execute(
            select(Commission.id)
            .where(
                Commission.referrer_id == referrer_id,
                Commission.referred_user_id == attempt.user_id,
            )
            .limit(1)
        )
        commission = Commission(
            referrer_id=referrer_id,
            referred_user_id=attempt.user_id,
            payment_id=payment.id,
            commission_type="renewal" if prior.first() is not None else "initial",
            payment_amount=attempt.amount,
            commission_rate=self.commission_rate,
            commission_amount=amount,
            payment_reference=payment.payment_reference,
            status="pending",
            created_at=self.clock(),
        )
        db.add(commission)
        await db.flush()
        await self.referrals.add_earnings(db, referrer_id, amount)

        metrics.record_commission()
        logger.info(
            "commission_created",
            referrer_id=referrer_id,
            referred_user_id=attempt.user_id,
            payment_id=payment.id,
            amount=str(amount),
        )
        return commission

    async def _on_failure(self, context: Dict[str, str], error: Exception) -> None:
        """Money moved, entitlement missing: log, count and page an operator."""
        logger.critical(
            "entitlement_activation_failed", error=str(error), exc_info=True, **context
        )
        metrics.record_activation_failure(context["kind"])
        await self.notifier.alert_operator(
            "Payment completed but entitlement was not granted",
            {**context, "error": str(error)},
        )

    def _schedule_notification(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._notify(user_id, event, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        try:
            await self.notifier.notify(user_id, event, data)
        except Exception:
            logger.exception("notification_failed", user_id=user_id, notification=event)
