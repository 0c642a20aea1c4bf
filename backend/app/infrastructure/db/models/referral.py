"""
Referral SQLModels

Tables backing the referral points ledger:
- ReferralCode: one shareable code per user
- Referral: who referred whom
- UserReferralPoints: running balance per referrer
- ReferralTransaction: earned/spent ledger
- ReferralPointsLog: one row per award evaluation
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, DateTime, Index, String, Text, text
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class ReferralCode(UUIDMixin, TimestampMixin, table=True):
    __tablename__ = "referral_codes"

    user_id: UUID = Field(..., unique=True, nullable=False)
    code: str = Field(sa_column=Column(String(32), unique=True, nullable=False))


class Referral(UUIDMixin, TimestampMixin, table=True):
    """A referred user can only ever have one referrer."""

    __tablename__ = "referrals"

    referrer_id: UUID = Field(..., index=True, nullable=False)
    referred_id: UUID = Field(..., unique=True, nullable=False)
    referral_code: str = Field(max_length=32)
    status: str = Field(default="pending", max_length=20)

    points_awarded: int = Field(default=0)
    times_awarded: int = Field(default=0)
    last_awarded_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    subscription_tier_id: Optional[UUID] = Field(default=None, foreign_key="subscription_tiers.id")


class UserReferralPoints(UUIDMixin, TimestampMixin, table=True):
    __tablename__ = "user_referral_points"

    user_id: UUID = Field(..., unique=True, nullable=False)
    points_balance: int = Field(default=0)
    total_earned: int = Field(default=0)
    total_spent: int = Field(default=0)
    total_referrals: int = Field(default=0)
    successful_referrals: int = Field(default=0)


class ReferralTransaction(UUIDMixin, TimestampMixin, table=True):
    __tablename__ = "referral_transactions"

    user_id: UUID = Field(..., index=True, nullable=False)
    transaction_type: str = Field(max_length=20)
    points: int
    balance_after: int
    referral_id: Optional[UUID] = Field(default=None, foreign_key="referrals.id")
    subscription_id: Optional[UUID] = Field(default=None)
    description: Optional[str] = Field(default=None, sa_column=Column(Text))


class ReferralPointsLog(UUIDMixin, TimestampMixin, table=True):
    """
    Audit trail of award evaluations, including skips and errors.

    At most one 'awarded' row per (referrer, subscription).
    """

    __tablename__ = "referral_points_log"
    __table_args__ = (
        Index(
            "uq_referral_points_log_awarded",
            "referrer_id",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'awarded'"),
        ),
    )

    subscription_id: UUID = Field(..., index=True, nullable=False)
    user_id: Optional[UUID] = Field(default=None)
    referrer_id: Optional[UUID] = Field(default=None)
    tier_name: Optional[str] = Field(default=None, max_length=50)
    points: int = Field(default=0)
    status: str = Field(max_length=20)
    reason: Optional[str] = Field(default=None, sa_column=Column(Text))
