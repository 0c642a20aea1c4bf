"""
Referral Services

ReferralAwardService credits the referrer when a referred user's paid
subscription is created. Every evaluation leaves one row in
referral_points_log (awarded, skipped or error), and an award failure
never blocks the subscription it was evaluated for.

ReferralService covers the user-facing side: codes, applying a code,
balances and spending points on a tier.
"""

import logging
import secrets
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.domain.referral import (
    AwardLogStatus,
    PointsTransactionType,
    ReferralStatus,
    ReferralSummaryResponse,
    SkipReason,
)
from app.domain.subscription import PaymentProvider
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.referral import (
    Referral,
    ReferralCode,
    ReferralPointsLog,
    ReferralTransaction,
)
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.repositories.referral_repository import ReferralRepository
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.exceptions import (
    DuplicateError,
    InsufficientPointsError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.services.tier_catalog import TierCatalog


logger = logging.getLogger(__name__)


class ReferralAwardService:
    """Points awards for referrers, one evaluation per subscription."""

    def __init__(
        self,
        referrals: ReferralRepository,
        subscriptions: SubscriptionRepository,
        catalog: TierCatalog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._referrals = referrals
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._clock = clock

    async def award_referral_points(self, subscription_id: UUID) -> Optional[ReferralPointsLog]:
        """
        Evaluate and, when eligible, apply the referral award for a subscription.

        Returns:
            The log row written for this evaluation, or None if even the
            error row could not be written.
        """
        subscription = await self._subscriptions.get_by_id(subscription_id)
        if subscription is None:
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.SUBSCRIPTION_NOT_FOUND
            )

        user_id = subscription.user_id
        tier = await self._catalog.get_by_id(subscription.tier_id)
        tier_name = tier.name if tier else None
        points = tier.referral_points_awarded if tier else 0

        if points <= 0:
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.ZERO_POINTS,
                user_id=user_id, tier_name=tier_name,
            )
        if subscription.payment_provider == PaymentProvider.POINTS.value:
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.POINTS_REDEMPTION,
                user_id=user_id, tier_name=tier_name,
            )

        referral = await self._referrals.get_by_referred(user_id, for_update=True)
        if referral is None:
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.NOT_REFERRED,
                user_id=user_id, tier_name=tier_name,
            )

        referrer_id = referral.referrer_id
        if await self._referrals.has_award(referrer_id, subscription_id):
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.ALREADY_AWARDED,
                user_id=user_id, referrer_id=referrer_id, tier_name=tier_name,
            )
        if referral.times_awarded > 0 and not tier.referral_award_on_renewal:
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.ALREADY_AWARDED,
                user_id=user_id, referrer_id=referrer_id, tier_name=tier_name,
            )

        try:
            async with self._referrals.savepoint():
                return await self._apply_award(subscription, referral, tier, points)
        except IntegrityError:
            logger.info(
                f"Referral award for subscription {subscription_id} already recorded concurrently"
            )
            return await self._log_outcome(
                subscription_id, AwardLogStatus.SKIPPED, SkipReason.ALREADY_AWARDED,
                user_id=user_id, referrer_id=referrer_id, tier_name=tier_name,
            )
        except SQLAlchemyError as e:
            logger.exception(f"Referral award failed for subscription {subscription_id}")
            return await self._log_outcome(
                subscription_id, AwardLogStatus.ERROR, str(e),
                user_id=user_id, referrer_id=referrer_id, tier_name=tier_name,
            )

    async def _apply_award(
        self,
        subscription: UserSubscription,
        referral: Referral,
        tier,
        points: int,
    ) -> ReferralPointsLog:
        now = self._clock()

        balance = await self._referrals.get_or_create_points(referral.referrer_id)
        first_award = referral.times_awarded == 0
        balance.points_balance += points
        balance.total_earned += points
        if first_award:
            balance.successful_referrals += 1
        balance.updated_at = now
        await self._referrals.save(balance)

        referral.times_awarded += 1
        referral.points_awarded += points
        referral.last_awarded_at = now
        referral.subscription_tier_id = tier.id
        if first_award:
            referral.status = ReferralStatus.COMPLETED.value
            referral.completed_at = now
        referral.updated_at = now
        await self._referrals.save(referral)

        await self._referrals.add_transaction(
            ReferralTransaction(
                user_id=referral.referrer_id,
                transaction_type=PointsTransactionType.EARNED.value,
                points=points,
                balance_after=balance.points_balance,
                referral_id=referral.id,
                subscription_id=subscription.id,
                description=f"Referral reward: {tier.display_name or tier.name} subscription",
            )
        )
        entry = await self._referrals.add_log(
            ReferralPointsLog(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                referrer_id=referral.referrer_id,
                tier_name=tier.name,
                points=points,
                status=AwardLogStatus.AWARDED.value,
            )
        )
        logger.info(
            f"Awarded {points} referral points to {referral.referrer_id} "
            f"for subscription {subscription.id} ({tier.name})"
        )
        return entry

    async def _log_outcome(
        self,
        subscription_id: UUID,
        status: AwardLogStatus,
        reason: str,
        user_id: Optional[UUID] = None,
        referrer_id: Optional[UUID] = None,
        tier_name: Optional[str] = None,
    ) -> Optional[ReferralPointsLog]:
        if status == AwardLogStatus.SKIPPED:
            logger.debug(f"Referral award skipped for subscription {subscription_id}: {reason}")
        entry = ReferralPointsLog(
            subscription_id=subscription_id,
            user_id=user_id,
            referrer_id=referrer_id,
            tier_name=tier_name,
            points=0,
            status=status.value,
            reason=reason,
        )
        try:
            async with self._referrals.savepoint():
                return await self._referrals.add_log(entry)
        except SQLAlchemyError:
            logger.exception(f"Could not write referral log for subscription {subscription_id}")
            return None


class ReferralService:
    """User-facing referral operations."""

    MAX_CODE_ATTEMPTS = 5

    def __init__(
        self,
        referrals: ReferralRepository,
        payments,
        catalog: TierCatalog,
        code_length: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ):
        # payments: PaymentService, untyped to keep the import graph acyclic
        self._referrals = referrals
        self._payments = payments
        self._catalog = catalog
        self._code_length = code_length
        self._clock = clock

    async def get_or_create_code(self, user_id: UUID) -> ReferralCode:
        existing = await self._referrals.get_code_for_user(user_id)
        if existing is not None:
            return existing

        for _ in range(self.MAX_CODE_ATTEMPTS):
            code = secrets.token_hex(max(self._code_length // 2, 2)).upper()
            try:
                async with self._referrals.savepoint():
                    created = await self._referrals.add(ReferralCode(user_id=user_id, code=code))
                logger.info(f"Created referral code for user {user_id}")
                return created
            except IntegrityError:
                # Either the code collided or another request created the user's code
                existing = await self._referrals.get_code_for_user(user_id)
                if existing is not None:
                    return existing

        raise DuplicateError(
            "Could not generate a unique referral code",
            operation="create",
            table="referral_codes",
        )

    async def apply_code(self, user_id: UUID, code: str) -> Referral:
        """
        Link the user to the owner of `code`.

        Raises:
            NotFoundError: unknown code.
            ValidationError: own code, or the user was already referred.
        """
        referral_code = await self._referrals.get_code(code.strip().upper())
        if referral_code is None:
            raise NotFoundError(f"Referral code {code} not found", table="referral_codes")
        if referral_code.user_id == user_id:
            raise ValidationError("You cannot use your own referral code")
        if await self._referrals.get_by_referred(user_id) is not None:
            raise ValidationError("A referral code has already been applied")

        referrer_id = referral_code.user_id
        try:
            async with self._referrals.savepoint():
                referral = await self._referrals.add(
                    Referral(
                        referrer_id=referrer_id,
                        referred_id=user_id,
                        referral_code=referral_code.code,
                        status=ReferralStatus.PENDING.value,
                    )
                )
        except IntegrityError as e:
            raise ValidationError(
                "A referral code has already been applied",
                original_error=e,
            ) from e

        balance = await self._referrals.get_or_create_points(referrer_id)
        balance.total_referrals += 1
        balance.updated_at = self._clock()
        await self._referrals.save(balance)

        logger.info(f"User {user_id} applied referral code of {referrer_id}")
        return referral

    async def get_summary(self, user_id: UUID) -> ReferralSummaryResponse:
        code = await self.get_or_create_code(user_id)
        balance = await self._referrals.get_points(user_id)
        return ReferralSummaryResponse(
            code=code.code,
            points_balance=balance.points_balance if balance else 0,
            total_earned=balance.total_earned if balance else 0,
            total_spent=balance.total_spent if balance else 0,
            total_referrals=balance.total_referrals if balance else 0,
            successful_referrals=balance.successful_referrals if balance else 0,
        )

    async def redeem_points(
        self,
        user_id: UUID,
        tier_id: UUID,
        selected_grade_id: Optional[UUID] = None,
        selected_subject_ids: Optional[List[UUID]] = None,
    ) -> UserSubscription:
        """
        Spend points on one month of a tier.

        Raises:
            ValidationError: tier cannot be bought with points.
            InsufficientPointsError: balance below the tier's cost.
        """
        tier = await self._catalog.get_purchasable(tier_id)
        if not tier.points_cost:
            raise ValidationError(f"Tier '{tier.name}' cannot be redeemed with points")

        balance = await self._referrals.get_points(user_id, for_update=True)
        available = balance.points_balance if balance else 0
        if available < tier.points_cost:
            raise InsufficientPointsError(
                balance=available,
                required=tier.points_cost,
            )

        subscription = await self._payments.redeem_with_points(
            user_id, tier, selected_grade_id, selected_subject_ids
        )

        balance.points_balance -= tier.points_cost
        balance.total_spent += tier.points_cost
        balance.updated_at = self._clock()
        await self._referrals.save(balance)
        await self._referrals.add_transaction(
            ReferralTransaction(
                user_id=user_id,
                transaction_type=PointsTransactionType.SPENT.value,
                points=tier.points_cost,
                balance_after=balance.points_balance,
                subscription_id=subscription.id,
                description=f"Redeemed one month of {tier.display_name or tier.name}",
            )
        )
        logger.info(f"User {user_id} redeemed {tier.points_cost} points for {tier.name}")
        return subscription
