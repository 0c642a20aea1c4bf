"""
Subscription Maintenance Service

Daily job with two sweeps:
1. Monthly reset: refill quotas of active rows whose period ended, or
   downgrade monthly plans that stopped renewing.
2. Yearly expiry: expire yearly plans past their term, one default-tier
   row per user.

Each row is handled in its own savepoint, so one bad row is logged and
reported without stopping the batch. Both sweeps select rows by
comparing dates with `now`, so a re-run only picks up what is still due.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from app.domain.subscription import (
    BillingCycle,
    LapseAction,
    MaintenanceReport,
    RowFailure,
    classify_lapsed_period,
    next_period_end,
)
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


class MaintenanceService:
    """Period maintenance over user_subscriptions."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        subscription_service: SubscriptionService,
        period_months: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._subscriptions = subscriptions
        self._service = subscription_service
        self._period_months = period_months
        self._clock = clock

    async def run(self, now: Optional[datetime] = None) -> MaintenanceReport:
        """Run both sweeps and return per-sweep counts."""
        now = now or self._clock()
        report = MaintenanceReport(started_at=now)

        logger.info(f"Subscription maintenance started at {now.isoformat()}")
        await self.reset_lapsed_periods(now, report)
        await self.expire_yearly_subscriptions(now, report)

        logger.info(
            f"Subscription maintenance finished: {report.periods_reset} reset, "
            f"{report.monthly_downgrades} monthly downgrades, "
            f"{report.yearly_expired} yearly expired, "
            f"{len(report.failures)} failures"
        )
        return report

    # =========================================================================
    # Sweep 1: monthly reset
    # =========================================================================

    async def reset_lapsed_periods(
        self,
        now: datetime,
        report: Optional[MaintenanceReport] = None,
    ) -> MaintenanceReport:
        report = report or MaintenanceReport(started_at=now)
        rows = await self._subscriptions.list_lapsed_periods(now)
        logger.info(f"Monthly sweep: {len(rows)} subscription(s) past period end")

        for row in rows:
            # Savepoint rollback expires the row; keep ids for the report
            subscription_id, user_id = row.id, row.user_id
            try:
                action = classify_lapsed_period(row, now)
                async with self._subscriptions.savepoint():
                    if action == LapseAction.RESET:
                        await self._reset_period(row, now)
                    elif action == LapseAction.DOWNGRADE:
                        await self._service.downgrade_to_default(row, now)
            except Exception as e:
                logger.exception(f"Monthly sweep failed for subscription {subscription_id}")
                report.failures.append(
                    RowFailure(
                        sweep="monthly_reset",
                        subscription_id=str(subscription_id),
                        user_id=str(user_id),
                        error=str(e),
                    )
                )
                continue

            if action == LapseAction.RESET:
                report.periods_reset += 1
            elif action == LapseAction.DOWNGRADE:
                report.monthly_downgrades += 1
                report.default_rows_created += 1
            else:
                logger.debug(f"Subscription {subscription_id} left for yearly expiry")
        return report

    async def _reset_period(self, row: UserSubscription, now: datetime) -> None:
        hard_limit = (
            row.subscription_end_date
            if row.billing_cycle == BillingCycle.YEARLY.value
            else None
        )
        row.tokens_used_current_period = 0
        row.papers_accessed_current_period = 0
        row.accessed_paper_ids = []
        row.token_limit_override = None
        row.period_start_date = now
        row.period_end_date = next_period_end(
            row.period_end_date, now, self._period_months, hard_limit
        )
        row.updated_at = now
        await self._subscriptions.save(row)
        logger.info(
            f"Reset period for subscription {row.id} ({row.billing_cycle}), "
            f"next reset {row.period_end_date.isoformat()}"
        )

    # =========================================================================
    # Sweep 2: yearly expiry
    # =========================================================================

    async def expire_yearly_subscriptions(
        self,
        now: datetime,
        report: Optional[MaintenanceReport] = None,
    ) -> MaintenanceReport:
        report = report or MaintenanceReport(started_at=now)
        user_ids = await self._subscriptions.list_expired_yearly_user_ids(now)
        logger.info(f"Yearly sweep: {len(user_ids)} user(s) with lapsed yearly plans")

        for user_id in user_ids:
            try:
                async with self._subscriptions.savepoint():
                    expired, created = await self._service.expire_yearly_for_user(user_id, now)
                report.yearly_expired += expired
                if created:
                    report.default_rows_created += 1
            except Exception as e:
                logger.exception(f"Yearly sweep failed for user {user_id}")
                report.failures.append(
                    RowFailure(
                        sweep="yearly_expiry",
                        subscription_id=None,
                        user_id=str(user_id),
                        error=str(e),
                    )
                )
        return report
