"""
Tier Catalog Service

Lookups over subscription_tiers with the lifecycle's rules attached:
which tier is the downgrade target, which tiers can be bought, and
which can be provisioned.
"""

import logging
from typing import List, Optional
from uuid import UUID

from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.db.repositories.tier_repository import TierRepository
from app.infrastructure.exceptions import (
    ConfigurationError,
    NotFoundError,
    TierNotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


class TierCatalog:
    """Catalog rules on top of TierRepository."""

    def __init__(self, tiers: TierRepository, default_tier_name: str = "free"):
        self._tiers = tiers
        self._default_tier_name = default_tier_name
        self._default_tier: Optional[SubscriptionTier] = None

    async def get_by_id(self, tier_id: UUID) -> Optional[SubscriptionTier]:
        return await self._tiers.get_by_id(tier_id)

    async def get_by_name(self, name: str) -> Optional[SubscriptionTier]:
        return await self._tiers.get_by_name(name)

    async def list_active(self) -> List[SubscriptionTier]:
        return await self._tiers.list_active()

    async def get_default_tier(self) -> SubscriptionTier:
        """
        The tier users fall back to when a paid plan lapses.

        Raises:
            ConfigurationError: default tier missing or inactive.
        """
        if self._default_tier is None:
            tier = await self._tiers.get_by_name(self._default_tier_name)
            if tier is None or not tier.is_active:
                raise ConfigurationError(
                    f"Default tier '{self._default_tier_name}' is missing or inactive",
                    missing_keys=["DEFAULT_TIER_NAME"],
                )
            self._default_tier = tier
        return self._default_tier

    async def is_default(self, tier_id: UUID) -> bool:
        default = await self.get_default_tier()
        return default.id == tier_id

    async def is_purchasable(self, tier: SubscriptionTier) -> bool:
        """Active, not coming soon, and not the default tier."""
        if not tier.is_active or tier.coming_soon:
            return False
        return not await self.is_default(tier.id)

    async def get_provisionable(
        self,
        tier_id: UUID,
        transaction_id: Optional[UUID] = None,
    ) -> SubscriptionTier:
        """
        Tier for a subscription about to be created.

        Raises:
            TierNotFoundError: unknown or inactive tier.
        """
        tier = await self._tiers.get_by_id(tier_id)
        if tier is None or not tier.is_active:
            raise TierNotFoundError(
                f"Tier {tier_id} does not exist or is inactive",
                transaction_id=str(transaction_id) if transaction_id else None,
                tier_id=str(tier_id),
            )
        return tier

    async def get_purchasable(self, tier_id: UUID) -> SubscriptionTier:
        """
        Tier a user may open a payment for.

        Raises:
            NotFoundError: unknown or inactive tier.
            ValidationError: tier is coming soon or is the free default.
        """
        tier = await self._tiers.get_by_id(tier_id)
        if tier is None or not tier.is_active:
            raise NotFoundError(f"Tier {tier_id} not found", table="subscription_tiers")
        if await self.is_purchasable(tier):
            return tier
        if tier.coming_soon:
            raise ValidationError(
                f"Tier '{tier.name}' is not available yet",
                {"tier": tier.name},
            )
        raise ValidationError(
            f"Tier '{tier.name}' cannot be purchased",
            {"tier": tier.name},
        )
