"""
Service wiring

Builds the lifecycle services over one session so every operation in a
request or job shares a single transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.repositories import (
    PaperRepository,
    PaymentRepository,
    ReferralRepository,
    SubscriptionRepository,
    TierRepository,
    WebhookEventRepository,
)
from app.infrastructure.services.maintenance_service import MaintenanceService
from app.infrastructure.services.paper_access_service import PaperAccessService
from app.infrastructure.services.payment_service import PaymentService
from app.infrastructure.services.referral_service import (
    ReferralAwardService,
    ReferralService,
)
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.tier_catalog import TierCatalog


@dataclass
class LifecycleServices:
    catalog: TierCatalog
    subscriptions: SubscriptionService
    payments: PaymentService
    maintenance: MaintenanceService
    paper_access: PaperAccessService
    referral_awards: ReferralAwardService
    referrals: ReferralService
    webhook_events: WebhookEventRepository

    @classmethod
    def from_repositories(
        cls,
        tiers: TierRepository,
        subscriptions: SubscriptionRepository,
        payments: PaymentRepository,
        referrals: ReferralRepository,
        papers: PaperRepository,
        webhook_events: WebhookEventRepository,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> "LifecycleServices":
        catalog = TierCatalog(tiers, settings.default_tier_name)
        referral_awards = ReferralAwardService(referrals, subscriptions, catalog, clock)
        subscription_service = SubscriptionService(
            subscriptions,
            catalog,
            papers=papers,
            referral_awards=referral_awards,
            period_months=settings.period_length_months,
            term_months=settings.yearly_term_months,
            clock=clock,
        )
        payment_service = PaymentService(payments, catalog, subscription_service, clock)
        return cls(
            catalog=catalog,
            subscriptions=subscription_service,
            payments=payment_service,
            maintenance=MaintenanceService(
                subscriptions,
                subscription_service,
                period_months=settings.period_length_months,
                clock=clock,
            ),
            paper_access=PaperAccessService(
                subscriptions,
                catalog,
                papers,
                recent_papers_limit=settings.recent_papers_limit,
            ),
            referral_awards=referral_awards,
            referrals=ReferralService(
                referrals,
                payment_service,
                catalog,
                code_length=settings.referral_code_length,
                clock=clock,
            ),
            webhook_events=webhook_events,
        )


def build_services(
    session: AsyncSession,
    settings: Settings,
    clock: Callable[[], datetime] = utcnow,
) -> LifecycleServices:
    return LifecycleServices.from_repositories(
        tiers=TierRepository(session),
        subscriptions=SubscriptionRepository(session),
        payments=PaymentRepository(session),
        referrals=ReferralRepository(session),
        papers=PaperRepository(session),
        webhook_events=WebhookEventRepository(session),
        settings=settings,
        clock=clock,
    )
