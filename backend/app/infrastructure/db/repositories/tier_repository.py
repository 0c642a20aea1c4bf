"""
Tier Repository

Read access to the subscription tier catalog.
"""

from typing import List, Optional

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.db.repositories.base_repository import BaseRepository


class TierRepository(BaseRepository[SubscriptionTier]):
    """Repository for the subscription_tiers catalog."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionTier, session)

    async def get_by_name(self, name: str) -> Optional[SubscriptionTier]:
        stmt = select(SubscriptionTier).where(SubscriptionTier.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> List[SubscriptionTier]:
        """Active tiers in catalog display order."""
        stmt = (
            select(SubscriptionTier)
            .where(SubscriptionTier.is_active.is_(True))
            .order_by(SubscriptionTier.display_order, SubscriptionTier.name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
