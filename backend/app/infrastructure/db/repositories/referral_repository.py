"""
Referral Repository

Data access for referral codes, referrals, point balances and the
award audit log.
"""

from typing import Optional
from uuid import UUID

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.referral import AwardLogStatus
from app.infrastructure.db.models.referral import (
    Referral,
    ReferralCode,
    ReferralPointsLog,
    ReferralTransaction,
    UserReferralPoints,
)
from app.infrastructure.db.repositories.base_repository import BaseRepository


class ReferralRepository(BaseRepository[Referral]):
    """
    Repository for the referral tables.

    The base operations act on `referrals`; the other tables are reached
    through the dedicated methods below.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Referral, session)

    # =========================================================================
    # Codes and referrals
    # =========================================================================

    async def get_code_for_user(self, user_id: UUID) -> Optional[ReferralCode]:
        stmt = select(ReferralCode).where(ReferralCode.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_code(self, code: str) -> Optional[ReferralCode]:
        stmt = select(ReferralCode).where(ReferralCode.code == code)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_referred(self, referred_id: UUID, for_update: bool = False) -> Optional[Referral]:
        stmt = select(Referral).where(Referral.referred_id == referred_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # =========================================================================
    # Balances
    # =========================================================================

    async def get_points(self, user_id: UUID, for_update: bool = False) -> Optional[UserReferralPoints]:
        stmt = select(UserReferralPoints).where(UserReferralPoints.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_points(self, user_id: UUID) -> UserReferralPoints:
        """Locked balance row for a user, created on first use."""
        points = await self.get_points(user_id, for_update=True)
        if points is None:
            points = await self.add(UserReferralPoints(user_id=user_id))
        return points

    async def add_transaction(self, transaction: ReferralTransaction) -> ReferralTransaction:
        return await self.add(transaction)

    # =========================================================================
    # Award log
    # =========================================================================

    async def has_award(self, referrer_id: UUID, subscription_id: UUID) -> bool:
        stmt = select(ReferralPointsLog.id).where(
            ReferralPointsLog.referrer_id == referrer_id,
            ReferralPointsLog.subscription_id == subscription_id,
            ReferralPointsLog.status == AwardLogStatus.AWARDED.value,
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def add_log(self, entry: ReferralPointsLog) -> ReferralPointsLog:
        return await self.add(entry)
