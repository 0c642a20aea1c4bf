"""
Subscription Tier SQLModel

Catalog of purchasable plans. Edited by operators only; capability
columns drive every access decision.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, Numeric, String, Text
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class SubscriptionTier(UUIDMixin, TimestampMixin, table=True):
    """
    SubscriptionTier database table model.

    NULL token_limit / papers_limit mean unlimited.
    """

    __tablename__ = "subscription_tiers"

    name: str = Field(
        sa_column=Column(String(50), unique=True, nullable=False),
        description="Stable identifier, e.g. 'free', 'student', 'pro'"
    )
    display_name: str = Field(sa_column=Column(String(100), nullable=False))
    description: Optional[str] = Field(default=None, sa_column=Column(Text))

    # Pricing
    price_monthly: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(10, 2), nullable=False, server_default="0"),
    )
    price_yearly: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(10, 2), nullable=False, server_default="0"),
    )
    currency: str = Field(default="USD", max_length=3)

    # Quotas
    token_limit: Optional[int] = Field(default=None, ge=0)
    papers_limit: Optional[int] = Field(default=None, ge=0)
    max_subjects: Optional[int] = Field(default=None, ge=0)

    # Capabilities
    can_select_grade: bool = Field(default=False)
    can_select_subjects: bool = Field(default=False)

    # Referral policy
    referral_points_awarded: int = Field(default=0, ge=0)
    referral_award_on_renewal: bool = Field(
        default=True,
        description="Award the referrer again when the referred user renews"
    )
    points_cost: Optional[int] = Field(
        default=None,
        ge=0,
        description="Referral points needed to redeem one month of this tier"
    )

    # Catalog state
    coming_soon: bool = Field(default=False)
    is_active: bool = Field(default=True)
    display_order: int = Field(default=0)

    # External ai_models table is owned elsewhere
    ai_model_id: Optional[UUID] = Field(default=None)
