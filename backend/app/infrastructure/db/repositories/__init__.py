"""
Repository Layer for the Exam Prep backend

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import (
    BaseRepository,
    IReadRepository,
    IWriteRepository,
)
from app.infrastructure.db.repositories.tier_repository import TierRepository
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.payment_repository import PaymentRepository
from app.infrastructure.db.repositories.referral_repository import ReferralRepository
from app.infrastructure.db.repositories.paper_repository import PaperRepository
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    "IReadRepository",
    "IWriteRepository",
    # Repositories
    "TierRepository",
    "SubscriptionRepository",
    "PaymentRepository",
    "ReferralRepository",
    "PaperRepository",
    "WebhookEventRepository",
]
