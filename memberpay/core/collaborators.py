"""
Stores owned by neighbouring services, consumed through protocols.

The SQL implementations below read and write the minimal columns the
payment core needs.
"""
from decimal import Decimal
from typing import Optional, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from memberpay.core.types import Clock, utcnow
from memberpay.database.models import Subscription, User

logger = structlog.get_logger(__name__)


class MembershipStore(Protocol):
    async def get_active_subscription(
        self, db: AsyncSession, user_id: str, is_child: bool = False
    ) -> Optional[Subscription]:
        ...

    async def set_membership_tier(self, db: AsyncSession, user_id: str, tier: str) -> None:
        ...


class ReferralStore(Protocol):
    async def find_referrer(self, db: AsyncSession, code: str) -> Optional[str]:
        ...

    async def add_earnings(self, db: AsyncSession, referrer_id: str, amount: Decimal) -> None:
        ...


class SqlMembershipStore:
    """Memberships backed by the ``subscriptions`` and ``users`` tables."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def get_active_subscription(
        self, db: AsyncSession, user_id: str, is_child: bool = False
    ) -> Optional[Subscription]:
        result = await db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.is_child == is_child,
                Subscription.status == "active",
            )
        )
        return result.scalar_one_or_none()

    async def set_membership_tier(self, db: AsyncSession, user_id: str, tier: str) -> None:
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(membership_tier=tier, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # The subscription row stays the source of truth
            logger.warning("membership_tier_user_missing", user_id=user_id, tier=tier)


class SqlReferralStore:
    """Referral codes and commission totals on the ``users`` table."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def find_referrer(self, db: AsyncSession, code: str) -> Optional[str]:
        result = await db.execute(select(User.id).where(User.referral_code == code))
        return result.scalar_one_or_none()

    async def add_earnings(self, db: AsyncSession, referrer_id: str, amount: Decimal) -> None:
        await db.execute(
            update(User)
            .where(User.id == referrer_id)
            .values(
                total_commissions_earned=User.total_commissions_earned + amount,
                available_commissions=User.available_commissions + amount,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
