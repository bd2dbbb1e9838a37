"""
Emergency-assistance token ledger.

A subscription's ``token_balance`` only ever changes together with a new
signed ``TokenTransaction`` in the same transaction, so the balance always
equals the sum of its transactions.
"""
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from memberpay.core.errors import InsufficientTokens, PaymentValidationError
from memberpay.core.types import Clock, utcnow
from memberpay.database.models import TokenSubscription, TokenTransaction

logger = structlog.get_logger(__name__)

# Unit value of one token per service category (FCFA)
TOKEN_VALUES: Dict[str, Decimal] = {
    "auto": Decimal("750"),
    "cata_catanis": Decimal("500"),
    "school_fees": Decimal("500"),
    "motors": Decimal("250"),
    "telephone": Decimal("250"),
    "first_aid": Decimal("250"),
}


def tokens_for(service_type: str, amount: Decimal, requested: Optional[int] = None) -> int:
    """
    Number of tokens a payment buys.

    An explicit ``requested`` count wins; otherwise the amount is divided by
    the unit value and rounded down.

    Raises:
        PaymentValidationError: If the service type is unknown
    """
    if service_type not in TOKEN_VALUES:
        raise PaymentValidationError(f"Unknown service type: {service_type}")
    if requested is not None:
        return int(requested)
    return int((amount / TOKEN_VALUES[service_type]).to_integral_value(rounding=ROUND_FLOOR))


class TokenLedger:
    """Credits, debits and audits token balances."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def get_subscription(
        self, db: AsyncSession, user_id: str, service_type: str
    ) -> Optional[TokenSubscription]:
        result = await db.execute(
            select(TokenSubscription).where(
                TokenSubscription.user_id == user_id,
                TokenSubscription.service_type == service_type,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create_subscription(
        self, db: AsyncSession, user_id: str, service_type: str
    ) -> TokenSubscription:
        """Token subscription for a service, created with a zero balance if absent."""
        subscription = await self.get_subscription(db, user_id, service_type)
        if subscription is not None:
            return subscription

        now = self.clock()
        try:
            async with db.begin_nested():
                subscription = TokenSubscription(
                    user_id=user_id,
                    service_type=service_type,
                    token_balance=0,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
                db.add(subscription)
        except IntegrityError:
            # Created concurrently by another activation
            subscription = await self.get_subscription(db, user_id, service_type)
            if subscription is None:
                raise
            return subscription

        logger.info(
            "token_subscription_created",
            user_id=user_id,
            service_type=service_type,
            subscription_id=subscription.id,
        )
        return subscription

    async def credit(
        self,
        db: AsyncSession,
        user_id: str,
        service_type: str,
        tokens: int,
        payment_id: str,
        payment_method: str,
        reference: Optional[str] = None,
    ) -> TokenTransaction:
        """
        Add purchased tokens to a balance.

        Raises:
            PaymentValidationError: If tokens is not positive
        """
        if tokens <= 0:
            raise PaymentValidationError("Token purchase must credit at least one token")

        subscription = await self.get_or_create_subscription(db, user_id, service_type)
        transaction = TokenTransaction(
            subscription_id=subscription.id,
            transaction_type="purchase",
            token_delta=tokens,
            token_value=TOKEN_VALUES[service_type],
            payment_id=payment_id,
            payment_method=payment_method,
            transaction_reference=reference,
            created_at=self.clock(),
        )
        db.add(transaction)
        await db.execute(
            update(TokenSubscription)
            .where(TokenSubscription.id == subscription.id)
            .values(
                token_balance=TokenSubscription.token_balance + tokens,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.flush()

        logger.info(
            "tokens_credited",
            user_id=user_id,
            service_type=service_type,
            tokens=tokens,
            payment_id=payment_id,
        )
        return transaction

    async def debit(
        self,
        db: AsyncSession,
        user_id: str,
        service_type: str,
        tokens: int,
        reference: Optional[str] = None,
    ) -> TokenTransaction:
        """
        Spend tokens from a balance.

        The balance check and the decrement are one conditional update, so
        concurrent debits can never drive a balance negative.

        Raises:
            PaymentValidationError: If tokens is not positive
            InsufficientTokens: If the balance is too low or no subscription exists
        """
        if tokens <= 0:
            raise PaymentValidationError("Token usage must debit at least one token")

        subscription = await self.get_subscription(db, user_id, service_type)
        if subscription is None:
            raise InsufficientTokens(f"No {service_type} tokens for user {user_id}")

        result = await db.execute(
            update(TokenSubscription)
            .where(
                TokenSubscription.id == subscription.id,
                TokenSubscription.token_balance >= tokens,
            )
            .values(
                token_balance=TokenSubscription.token_balance - tokens,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientTokens(
                f"Balance too low to use {tokens} {service_type} tokens"
            )

        transaction = TokenTransaction(
            subscription_id=subscription.id,
            transaction_type="usage",
            token_delta=-tokens,
            token_value=TOKEN_VALUES[service_type],
            transaction_reference=reference,
            created_at=self.clock(),
        )
        db.add(transaction)
        await db.flush()

        logger.info(
            "tokens_debited", user_id=user_id, service_type=service_type, tokens=tokens
        )
        return transaction

    async def balance_from_ledger(self, db: AsyncSession, subscription_id: str) -> int:
        """Balance recomputed from the transaction history."""
        result = await db.execute(
            select(func.coalesce(func.sum(TokenTransaction.token_delta), 0)).where(
                TokenTransaction.subscription_id == subscription_id
            )
        )
        return int(result.scalar_one())

    async def verify_conservation(self, db: AsyncSession, subscription_id: str) -> bool:
        """Check that the stored balance equals the fold of its transactions."""
        subscription = await db.get(TokenSubscription, subscription_id, populate_existing=True)
        if subscription is None:
            return False
        folded = await self.balance_from_ledger(db, subscription_id)
        if folded != subscription.token_balance:
            logger.error(
                "token_balance_drift",
                subscription_id=subscription_id,
                stored_balance=subscription.token_balance,
                ledger_balance=folded,
            )
            return False
        return True
