"""
SQLModel ORM Models for the Exam Prep backend

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    TimestampMixin,
    UUIDMixin,
    utcnow,
)
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.payment import PaymentTransaction
from app.infrastructure.db.models.referral import (
    ReferralCode,
    Referral,
    UserReferralPoints,
    ReferralTransaction,
    ReferralPointsLog,
)
from app.infrastructure.db.models.catalog import (
    GradeLevel,
    Subject,
    ExamPaper,
    Conversation,
    EXTERNAL_TABLES,
)


__all__ = [
    # Base
    "TimestampMixin",
    "UUIDMixin",
    "utcnow",
    # Subscriptions
    "SubscriptionTier",
    "UserSubscription",
    "PaymentTransaction",
    # Referrals
    "ReferralCode",
    "Referral",
    "UserReferralPoints",
    "ReferralTransaction",
    "ReferralPointsLog",
    # Read-only catalog
    "GradeLevel",
    "Subject",
    "ExamPaper",
    "Conversation",
    "EXTERNAL_TABLES",
]
