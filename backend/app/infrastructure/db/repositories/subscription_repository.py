"""
Subscription Repository

Data access layer for user_subscriptions.
Queries here back the state machine and the maintenance sweeps.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import BillingCycle, SubscriptionStatus
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class SubscriptionRepository(BaseRepository[UserSubscription]):
    """
    Repository for subscription rows.

    Every "active" lookup relies on the partial unique index
    (user_id) WHERE status = 'active'.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(UserSubscription, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_active_for_user(
        self,
        user_id: UUID,
        for_update: bool = False,
    ) -> Optional[UserSubscription]:
        """
        Get the user's active subscription.

        Args:
            user_id: Auth user ID
            for_update: Lock the row until the transaction ends

        Returns:
            Active UserSubscription or None
        """
        stmt = select(UserSubscription).where(
            UserSubscription.user_id == user_id,
            UserSubscription.status == SubscriptionStatus.ACTIVE.value,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_active_for_user(self, user_id: UUID) -> List[UserSubscription]:
        """All active rows for a user (more than one only if the index was bypassed)."""
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_source_transaction(self, transaction_id: UUID) -> Optional[UserSubscription]:
        stmt = select(UserSubscription).where(
            UserSubscription.source_transaction_id == transaction_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_provider_subscription(
        self,
        provider_subscription_id: str,
    ) -> Optional[UserSubscription]:
        stmt = select(UserSubscription).where(
            UserSubscription.provider_subscription_id == provider_subscription_id,
            UserSubscription.status == SubscriptionStatus.ACTIVE.value,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def list_history_for_user(self, user_id: UUID, limit: int = 50) -> List[UserSubscription]:
        stmt = (
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .order_by(UserSubscription.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Maintenance Queries
    # =========================================================================

    async def list_lapsed_periods(self, now: datetime) -> List[UserSubscription]:
        """Active rows whose quota period ended before `now`."""
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
                UserSubscription.period_end_date < now,
            )
            .order_by(UserSubscription.period_end_date)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_expired_yearly_user_ids(self, now: datetime) -> List[UUID]:
        """Distinct users holding an active yearly row past its term."""
        stmt = (
            select(UserSubscription.user_id)
            .where(
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
                UserSubscription.billing_cycle == BillingCycle.YEARLY.value,
                UserSubscription.subscription_end_date < now,
            )
            .distinct()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
