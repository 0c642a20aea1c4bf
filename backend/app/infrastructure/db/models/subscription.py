"""
User Subscription SQLModel

One logically-active row per user. Tier changes supersede rows instead
of deleting them.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import Column, DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID as PGUUID
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class UserSubscription(UUIDMixin, TimestampMixin, table=True):
    """
    UserSubscription database table model.

    Array columns are replaced, never mutated in place, so SQLAlchemy
    notices the change.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index(
            "uq_user_subscriptions_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_user_subscriptions_status_period_end", "status", "period_end_date"),
    )

    user_id: UUID = Field(..., index=True, nullable=False)
    tier_id: UUID = Field(..., foreign_key="subscription_tiers.id", nullable=False)

    status: str = Field(default="active", max_length=20)
    billing_cycle: str = Field(default="monthly", max_length=20)
    is_recurring: bool = Field(default=True)

    # Cancellation
    cancel_at_period_end: bool = Field(default=False)
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)
    cancellation_requested_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    # Quota period (always monthly) and yearly hard limit
    period_start_date: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    period_end_date: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    subscription_end_date: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    # Usage
    tokens_used_current_period: int = Field(default=0, ge=0)
    token_limit_override: Optional[int] = Field(
        default=None,
        description="Tier limit plus carried-over tokens; cleared on reset"
    )
    papers_accessed_current_period: int = Field(default=0, ge=0)
    accessed_paper_ids: List[UUID] = Field(
        default_factory=list,
        sa_column=Column(
            ARRAY(PGUUID(as_uuid=True)),
            nullable=False,
            server_default=text("'{}'::uuid[]"),
        ),
    )

    # Selections
    selected_grade_id: Optional[UUID] = Field(default=None)
    selected_subject_ids: Optional[List[UUID]] = Field(
        default=None,
        sa_column=Column(ARRAY(PGUUID(as_uuid=True))),
    )

    # Payment provenance
    payment_provider: Optional[str] = Field(default=None, max_length=20)
    payment_type: Optional[str] = Field(default=None, max_length=20)
    provider_subscription_id: Optional[str] = Field(
        default=None, sa_column=Column(String(255), index=True)
    )
    last_payment_date: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
    source_transaction_id: Optional[UUID] = Field(
        default=None,
        foreign_key="payment_transactions.id",
        unique=True,
    )
