"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(12, 2)


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    # Create users table
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("membership_tier", sa.String(length=32), nullable=True),
        sa.Column("referral_code", sa.String(length=64), nullable=True),
        sa.Column("total_commissions_earned", MONEY, nullable=False),
        sa.Column("available_commissions", MONEY, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("referral_code"),
    )

    # Create payment_attempts table
    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("gateway", sa.String(length=32), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("external_reference", sa.String(length=255), nullable=True),
        sa.Column("settled_reference", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.String(length=50), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="attempt_positive_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="attempt_valid_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "gateway", "external_reference", name="uq_attempt_gateway_reference"
        ),
    )
    op.create_index(
        "idx_attempts_user_status", "payment_attempts", ["user_id", "status"], unique=False
    )
    op.create_index(
        op.f("ix_payment_attempts_created_at"), "payment_attempts", ["created_at"], unique=False
    )
    op.create_index(
        op.f("ix_payment_attempts_status"), "payment_attempts", ["status"], unique=False
    )
    op.create_index(
        op.f("ix_payment_attempts_user_id"), "payment_attempts", ["user_id"], unique=False
    )

    # Create payments table
    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("payment_attempt_id", sa.String(length=64), nullable=False),
        sa.Column("subscription_id", sa.String(length=64), nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("payment_reference", sa.String(length=255), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="payment_positive_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded', 'cancelled', 'expired')",
            name="payment_valid_status",
        ),
        sa.ForeignKeyConstraint(["payment_attempt_id"], ["payment_attempts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_attempt_id"),
        sa.UniqueConstraint("payment_reference"),
    )
    op.create_index(op.f("ix_payments_created_at"), "payments", ["created_at"], unique=False)
    op.create_index(op.f("ix_payments_user_id"), "payments", ["user_id"], unique=False)

    # Create subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("plan", sa.String(length=20), nullable=False),
        sa.Column("tier", sa.String(length=20), nullable=False),
        sa.Column("is_child", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("last_payment_id", sa.String(length=64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'pending', 'cancelled', 'expired', 'paused')",
            name="subscription_valid_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subscriptions_user_id"), "subscriptions", ["user_id"], unique=False
    )
    # One active adult and one active child subscription per user
    op.create_index(
        "uq_subscriptions_one_active",
        "subscriptions",
        ["user_id", "is_child"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # Create token_subscriptions table
    op.create_table(
        "token_subscriptions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("service_type", sa.String(length=32), nullable=False),
        sa.Column("token_balance", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "service_type", name="uq_token_subscription_service"),
    )
    op.create_index(
        op.f("ix_token_subscriptions_user_id"), "token_subscriptions", ["user_id"], unique=False
    )

    # Create token_transactions table
    op.create_table(
        "token_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.String(length=64), nullable=False),
        sa.Column("transaction_type", sa.String(length=20), nullable=False),
        sa.Column("token_delta", sa.Integer(), nullable=False),
        sa.Column("token_value", MONEY, nullable=False),
        sa.Column("payment_id", sa.String(length=64), nullable=True),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        sa.Column("transaction_reference", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(transaction_type = 'purchase' AND token_delta > 0) OR "
            "(transaction_type = 'usage' AND token_delta < 0)",
            name="token_delta_sign",
        ),
        sa.ForeignKeyConstraint(["subscription_id"], ["token_subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_id"),
    )
    op.create_index(
        op.f("ix_token_transactions_subscription_id"),
        "token_transactions",
        ["subscription_id"],
        unique=False,
    )

    # Create commissions table
    op.create_table(
        "commissions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("referrer_id", sa.String(length=64), nullable=False),
        sa.Column("referred_user_id", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=64), nullable=False),
        sa.Column("commission_type", sa.String(length=20), nullable=False),
        sa.Column("payment_amount", MONEY, nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("commission_amount", MONEY, nullable=False),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'cancelled')",
            name="commission_valid_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "referrer_id",
            "referred_user_id",
            "payment_id",
            name="uq_commission_referral_payment",
        ),
    )
    op.create_index(
        op.f("ix_commissions_referrer_id"), "commissions", ["referrer_id"], unique=False
    )

    # Create listing_fees table
    op.create_table(
        "listing_fees",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("listing_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("listing_id"),
        sa.UniqueConstraint("payment_id"),
    )

    # Create payment_events table
    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("attempt_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_events_attempt_id"), "payment_events", ["attempt_id"], unique=False
    )
    op.create_index(
        op.f("ix_payment_events_correlation_id"),
        "payment_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_events_created_at"), "payment_events", ["created_at"], unique=False
    )
    op.create_index("idx_payment_events_type", "payment_events", ["event_type"], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("payment_events")
    op.drop_table("listing_fees")
    op.drop_table("commissions")
    op.drop_table("token_transactions")
    op.drop_table("token_subscriptions")
    op.drop_index("uq_subscriptions_one_active", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("payments")
    op.drop_table("payment_attempts")
    op.drop_table("users")
