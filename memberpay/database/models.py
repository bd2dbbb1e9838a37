"""SQLAlchemy database models for payment orchestration and entitlements."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

MONEY = Numeric(12, 2)


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Member profile columns the payment core reads and writes.

    The rest of the profile is owned by the account service.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    membership_tier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    referral_code: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    total_commissions_earned: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0")
    )
    available_commissions: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, tier={self.membership_tier})>"


class PaymentAttempt(Base):
    """
    One initiation request to a gateway.

    Mutated only through conditional updates in the ledger; never deleted.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    settled_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    failure_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    attempt_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="attempt_positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="attempt_valid_status",
        ),
        UniqueConstraint("gateway", "external_reference", name="uq_attempt_gateway_reference"),
        Index("idx_attempts_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAttempt(id={self.id}, gateway={self.gateway}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Payment(Base):
    """
    Finalized record of money that moved.

    ``payment_reference`` is the gateway settlement id and the idempotency key.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_attempt_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("payment_attempts.id"), unique=True, nullable=False
    )
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded', 'cancelled', 'expired')",
            name="payment_valid_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, reference={self.payment_reference}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Subscription(Base):
    """
    Membership entitlement.

    At most one active adult and one active child subscription per user.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan: Mapped[str] = mapped_column(String(20), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    is_child: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'pending', 'cancelled', 'expired', 'paused')",
            name="subscription_valid_status",
        ),
        Index(
            "uq_subscriptions_one_active",
            "user_id",
            "is_child",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"tier={self.tier}, status={self.status})>"
        )


class TokenSubscription(Base):
    """Emergency-assistance token balance for one service category."""

    __tablename__ = "token_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)
    token_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "service_type", name="uq_token_subscription_service"),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenSubscription(id={self.id}, service={self.service_type}, "
            f"balance={self.token_balance})>"
        )


class TokenTransaction(Base):
    """
    Signed change to a token balance.

    Immutable once written; the balance is the fold of these rows.
    """

    __tablename__ = "token_transactions"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    subscription_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("token_subscriptions.id"), nullable=False, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    token_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    token_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "(transaction_type = 'purchase' AND token_delta > 0) OR "
            "(transaction_type = 'usage' AND token_delta < 0)",
            name="token_delta_sign",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenTransaction(id={self.id}, type={self.transaction_type}, "
            f"delta={self.token_delta})>"
        )


class Commission(Base):
    """Referral commission earned on a referred user's payment."""

    __tablename__ = "commissions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    referred_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    commission_type: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "referrer_id", "referred_user_id", "payment_id", name="uq_commission_referral_payment"
        ),
        CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled')",
            name="commission_valid_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Commission(id={self.id}, referrer={self.referrer_id}, "
            f"amount={self.commission_amount})>"
        )


class ListingFee(Base):
    """Confirmation that a marketplace listing fee was paid."""

    __tablename__ = "listing_fees"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    listing_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    confirmed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ListingFee(listing_id={self.listing_id}, payment_id={self.payment_id})>"


class PaymentEvent(Base):
    """
    Payment attempt audit trail.

    Stores every lifecycle event of an attempt. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    attempt_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (Index("idx_payment_events_type", "event_type"),)

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, attempt_id={self.attempt_id}, "
            f"type={self.event_type})>"
        )
