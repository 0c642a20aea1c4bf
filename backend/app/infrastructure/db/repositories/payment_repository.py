"""
Payment Repository

Data access for the payment_transactions ledger.
"""

from typing import List, Optional
from uuid import UUID

from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import PaymentStatus
from app.infrastructure.db.models.payment import PaymentTransaction
from app.infrastructure.db.repositories.base_repository import BaseRepository


class PaymentRepository(BaseRepository[PaymentTransaction]):
    """Repository for payment transactions."""

    def __init__(self, session: AsyncSession):
        super().__init__(PaymentTransaction, session)

    async def get_by_external_id(
        self,
        provider: str,
        external_transaction_id: str,
    ) -> Optional[PaymentTransaction]:
        stmt = select(PaymentTransaction).where(
            PaymentTransaction.payment_provider == provider,
            PaymentTransaction.external_transaction_id == external_transaction_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_completed_for_provider_subscription(
        self,
        provider: str,
        provider_subscription_id: str,
    ) -> Optional[PaymentTransaction]:
        """Most recent completed charge of a recurring provider subscription."""
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.payment_provider == provider,
                PaymentTransaction.provider_subscription_id == provider_subscription_id,
                PaymentTransaction.status == PaymentStatus.COMPLETED.value,
            )
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID, limit: int = 50) -> List[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
