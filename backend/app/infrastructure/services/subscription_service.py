"""
Subscription Service

The per-user subscription state machine.

Every path that changes a user's tier (payment provisioning, operator
tier change, lapse downgrade, yearly expiry) goes through `_activate`,
which supersedes the current active row and inserts the new one inside
a savepoint. Old rows are kept with status expired/cancelled.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from app.domain.subscription import (
    BillingCycle,
    PaymentType,
    Selections,
    SubscriptionStatus,
    UsageResponse,
    UNLIMITED,
    carryover_token_limit,
    compute_provisioning_periods,
    effective_token_limit,
    merge_selections,
    tokens_remaining,
    validate_selections,
)
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.payment import PaymentTransaction
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.db.repositories.paper_repository import PaperRepository
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.exceptions import (
    DuplicateError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.services.tier_catalog import TierCatalog


logger = logging.getLogger(__name__)


class ReferralEvaluator(Protocol):
    async def award_referral_points(self, subscription_id: UUID): ...


class SubscriptionService:
    """
    Subscription lifecycle operations.

    Args:
        subscriptions: Repository over user_subscriptions
        catalog: Tier catalog rules
        papers: Catalog reads used to validate selections
        referral_awards: Evaluated after every paid activation
        period_months / term_months: quota period and yearly term
        clock: Source of "now"; injectable for tests
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        catalog: TierCatalog,
        papers: Optional[PaperRepository] = None,
        referral_awards: Optional[ReferralEvaluator] = None,
        period_months: int = 1,
        term_months: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._papers = papers
        self._referral_awards = referral_awards
        self._period_months = period_months
        self._term_months = term_months
        self._clock = clock

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_active(self, user_id: UUID) -> Optional[UserSubscription]:
        return await self._subscriptions.get_active_for_user(user_id)

    async def get_active_with_tier(
        self,
        user_id: UUID,
    ) -> Optional[Tuple[UserSubscription, SubscriptionTier]]:
        subscription = await self._subscriptions.get_active_for_user(user_id)
        if subscription is None:
            return None
        tier = await self._catalog.get_by_id(subscription.tier_id)
        return subscription, tier

    async def get_by_source_transaction(self, transaction_id: UUID) -> Optional[UserSubscription]:
        return await self._subscriptions.get_by_source_transaction(transaction_id)

    async def get_history(self, user_id: UUID) -> List[UserSubscription]:
        return await self._subscriptions.list_history_for_user(user_id)

    async def get_usage(self, user_id: UUID) -> UsageResponse:
        """Quota usage for the current period, creating a free row if needed."""
        subscription = await self.ensure_subscription(user_id)
        tier = await self._catalog.get_by_id(subscription.tier_id)

        limit = effective_token_limit(tier.token_limit, subscription.token_limit_override)
        used = subscription.tokens_used_current_period
        return UsageResponse(
            tokens_used=used,
            token_limit=UNLIMITED if limit is None else limit,
            tokens_remaining=tokens_remaining(limit, used),
            papers_accessed=subscription.papers_accessed_current_period,
            papers_limit=UNLIMITED if tier.papers_limit is None else tier.papers_limit,
            can_chat=limit is None or used < limit,
            period_end_date=subscription.period_end_date,
        )

    # =========================================================================
    # Activation pipeline
    # =========================================================================

    async def provision_from_payment(
        self,
        transaction: PaymentTransaction,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Create the active subscription for a completed payment.

        Idempotent per transaction: a second call returns the row the
        first call created.

        Raises:
            TierNotFoundError: the transaction's tier is unknown or inactive.
        """
        existing = await self._subscriptions.get_by_source_transaction(transaction.id)
        if existing is not None:
            logger.info(
                f"Transaction {transaction.id} already provisioned subscription {existing.id}"
            )
            return existing

        tier = await self._catalog.get_provisionable(transaction.tier_id, transaction.id)
        now = now or self._clock()

        subscription = await self._activate(
            user_id=transaction.user_id,
            tier=tier,
            billing_cycle=BillingCycle(transaction.billing_cycle),
            incoming=Selections(
                grade_id=transaction.selected_grade_id,
                subject_ids=transaction.selected_subject_ids,
            ),
            now=now,
            is_recurring=transaction.payment_type == PaymentType.RECURRING.value,
            payment_provider=transaction.payment_provider,
            payment_type=transaction.payment_type,
            provider_subscription_id=transaction.provider_subscription_id,
            source_transaction_id=transaction.id,
            last_payment_date=transaction.completed_at or now,
        )
        logger.info(
            f"Provisioned {tier.name} ({transaction.billing_cycle}) subscription "
            f"{subscription.id} for user {transaction.user_id} from transaction {transaction.id}"
        )
        await self._evaluate_referrals(subscription.id)
        return subscription

    async def change_tier(
        self,
        user_id: UUID,
        tier_id: UUID,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        selected_grade_id: Optional[UUID] = None,
        selected_subject_ids: Optional[List[UUID]] = None,
        is_recurring: bool = False,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """Operator upgrade/downgrade outside the payment ledger."""
        tier = await self._catalog.get_provisionable(tier_id)
        now = now or self._clock()
        subscription = await self._activate(
            user_id=user_id,
            tier=tier,
            billing_cycle=billing_cycle,
            incoming=Selections(grade_id=selected_grade_id, subject_ids=selected_subject_ids),
            now=now,
            is_recurring=is_recurring,
            payment_provider="manual",
        )
        logger.info(f"Changed user {user_id} to tier {tier.name} (subscription {subscription.id})")
        if not await self._catalog.is_default(tier.id):
            await self._evaluate_referrals(subscription.id)
        return subscription

    async def downgrade_to_default(
        self,
        subscription: UserSubscription,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Replace a lapsed row with a fresh default-tier row.

        The old row ends as cancelled when the user asked to cancel,
        expired otherwise.
        """
        now = now or self._clock()
        default_tier = await self._catalog.get_default_tier()
        final_status = (
            SubscriptionStatus.CANCELLED
            if subscription.cancel_at_period_end
            else SubscriptionStatus.EXPIRED
        )
        user_id = subscription.user_id
        old_id = subscription.id

        replacement = await self._activate(
            user_id=user_id,
            tier=default_tier,
            billing_cycle=BillingCycle.MONTHLY,
            incoming=Selections(),
            now=now,
            is_recurring=True,
            supersede_status=final_status,
            carry_tokens=False,
            replace_on_conflict=False,
        )
        logger.info(
            f"Downgraded user {user_id} to {default_tier.name}: "
            f"{old_id} -> {final_status.value}, new subscription {replacement.id}"
        )
        return replacement

    async def ensure_subscription(
        self,
        user_id: UUID,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """Active subscription for a user, assigning the default tier on first use."""
        existing = await self._subscriptions.get_active_for_user(user_id)
        if existing is not None:
            return existing

        default_tier = await self._catalog.get_default_tier()
        subscription = await self._activate(
            user_id=user_id,
            tier=default_tier,
            billing_cycle=BillingCycle.MONTHLY,
            incoming=Selections(),
            now=now or self._clock(),
            is_recurring=True,
            carry_tokens=False,
            replace_on_conflict=False,
        )
        logger.info(f"Assigned {default_tier.name} tier to user {user_id}")
        return subscription

    async def expire_yearly_for_user(
        self,
        user_id: UUID,
        now: Optional[datetime] = None,
    ) -> Tuple[int, bool]:
        """
        Expire every active yearly row of a user past its term.

        Returns:
            (rows expired, whether a default-tier row was created).
            At most one default row is created however many rows expired.
        """
        now = now or self._clock()
        rows = await self._subscriptions.list_active_for_user(user_id)
        lapsed = [
            row for row in rows
            if row.billing_cycle == BillingCycle.YEARLY.value
            and row.subscription_end_date is not None
            and row.subscription_end_date < now
        ]
        if not lapsed:
            return 0, False

        for row in lapsed:
            row.status = SubscriptionStatus.EXPIRED.value
            row.updated_at = now
            await self._subscriptions.save(row)

        if len(lapsed) < len(rows):
            # Something else is still active for this user
            return len(lapsed), False

        default_tier = await self._catalog.get_default_tier()
        replacement = await self._activate(
            user_id=user_id,
            tier=default_tier,
            billing_cycle=BillingCycle.MONTHLY,
            incoming=Selections(),
            now=now,
            is_recurring=True,
            carry_tokens=False,
            replace_on_conflict=False,
        )
        logger.info(
            f"Expired {len(lapsed)} yearly subscription(s) for user {user_id}, "
            f"new {default_tier.name} subscription {replacement.id}"
        )
        return len(lapsed), True

    async def _activate(
        self,
        user_id: UUID,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        incoming: Selections,
        now: datetime,
        is_recurring: bool,
        payment_provider: Optional[str] = None,
        payment_type: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        source_transaction_id: Optional[UUID] = None,
        last_payment_date: Optional[datetime] = None,
        supersede_status: SubscriptionStatus = SubscriptionStatus.EXPIRED,
        carry_tokens: bool = True,
        replace_on_conflict: bool = True,
    ) -> UserSubscription:
        """
        Supersede the user's active row and insert the new one.

        A concurrent activation for the same user trips the partial unique
        index. Paid activations retry once and supersede the winner;
        default-tier activations keep the winner instead.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._subscriptions.savepoint():
                    return await self._supersede_and_insert(
                        user_id=user_id,
                        tier=tier,
                        billing_cycle=billing_cycle,
                        incoming=incoming,
                        now=now,
                        is_recurring=is_recurring,
                        payment_provider=payment_provider,
                        payment_type=payment_type,
                        provider_subscription_id=provider_subscription_id,
                        source_transaction_id=source_transaction_id,
                        last_payment_date=last_payment_date,
                        supersede_status=supersede_status,
                        carry_tokens=carry_tokens,
                    )
            except IntegrityError as e:
                logger.warning(
                    f"Concurrent activation for user {user_id} (attempt {attempt}): {e.orig}"
                )
                if source_transaction_id is not None:
                    existing = await self._subscriptions.get_by_source_transaction(
                        source_transaction_id
                    )
                    if existing is not None:
                        return existing
                if not replace_on_conflict:
                    winner = await self._subscriptions.get_active_for_user(user_id)
                    if winner is not None:
                        return winner
                if attempt >= 2:
                    raise DuplicateError(
                        f"Could not activate subscription for user {user_id}",
                        operation="activate",
                        table="user_subscriptions",
                        original_error=e,
                    )

    async def _supersede_and_insert(
        self,
        user_id: UUID,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        incoming: Selections,
        now: datetime,
        is_recurring: bool,
        payment_provider: Optional[str],
        payment_type: Optional[str],
        provider_subscription_id: Optional[str],
        source_transaction_id: Optional[UUID],
        last_payment_date: Optional[datetime],
        supersede_status: SubscriptionStatus,
        carry_tokens: bool,
    ) -> UserSubscription:
        current = await self._subscriptions.get_active_for_user(user_id, for_update=True)

        previous: Optional[Selections] = None
        tier_changed = True
        token_limit_override = None

        if current is not None:
            previous = Selections(
                grade_id=current.selected_grade_id,
                subject_ids=current.selected_subject_ids,
            )
            tier_changed = current.tier_id != tier.id

            if carry_tokens:
                old_tier = await self._catalog.get_by_id(current.tier_id)
                old_limit = effective_token_limit(
                    old_tier.token_limit if old_tier else None,
                    current.token_limit_override,
                )
                token_limit_override = carryover_token_limit(
                    old_limit, current.tokens_used_current_period, tier.token_limit
                )

            current.status = supersede_status.value
            current.updated_at = now
            # Flush before the insert so the partial unique index sees the change
            await self._subscriptions.save(current)

        selections = merge_selections(tier, incoming, previous, tier_changed)
        periods = compute_provisioning_periods(
            billing_cycle, now, self._period_months, self._term_months
        )

        subscription = UserSubscription(
            user_id=user_id,
            tier_id=tier.id,
            status=SubscriptionStatus.ACTIVE.value,
            billing_cycle=billing_cycle.value,
            is_recurring=is_recurring,
            cancel_at_period_end=False,
            period_start_date=periods.period_start,
            period_end_date=periods.period_end,
            subscription_end_date=periods.subscription_end,
            tokens_used_current_period=0,
            token_limit_override=token_limit_override,
            papers_accessed_current_period=0,
            accessed_paper_ids=[],
            selected_grade_id=selections.grade_id,
            selected_subject_ids=selections.subject_ids,
            payment_provider=payment_provider,
            payment_type=payment_type,
            provider_subscription_id=provider_subscription_id,
            last_payment_date=last_payment_date,
            source_transaction_id=source_transaction_id,
            created_at=now,
            updated_at=now,
        )
        return await self._subscriptions.add(subscription)

    async def _evaluate_referrals(self, subscription_id: UUID) -> None:
        if self._referral_awards is None:
            return
        await self._referral_awards.award_referral_points(subscription_id)

    # =========================================================================
    # User-initiated changes
    # =========================================================================

    async def cancel_at_period_end(
        self,
        user_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Stop the plan at the end of the current period.

        Monthly plans stop renewing. Yearly plans keep their monthly
        refills until the paid term ends.

        Raises:
            NotFoundError: no active subscription.
            ValidationError: default tier, or already cancelled.
        """
        subscription = await self._subscriptions.get_active_for_user(user_id, for_update=True)
        if subscription is None:
            raise NotFoundError("No active subscription", table="user_subscriptions")
        if await self._catalog.is_default(subscription.tier_id):
            raise ValidationError("The free plan cannot be cancelled")
        if subscription.cancel_at_period_end:
            raise ValidationError("Subscription is already scheduled for cancellation")

        now = now or self._clock()
        subscription.cancel_at_period_end = True
        subscription.cancellation_reason = reason
        subscription.cancellation_requested_at = now
        if subscription.billing_cycle == BillingCycle.MONTHLY.value:
            subscription.is_recurring = False
        subscription.updated_at = now
        await self._subscriptions.save(subscription)

        logger.info(
            f"User {user_id} cancelled subscription {subscription.id} "
            f"({subscription.billing_cycle}) at period end"
        )
        return subscription

    async def cancel_by_provider_subscription(
        self,
        provider_subscription_id: str,
        reason: str = "Cancelled at payment provider",
    ) -> Optional[UserSubscription]:
        """Provider-side cancellation. Unknown or already-cancelled ids are no-ops."""
        subscription = await self._subscriptions.get_active_by_provider_subscription(
            provider_subscription_id
        )
        if subscription is None:
            logger.info(f"No active subscription for provider id {provider_subscription_id}")
            return None
        if subscription.cancel_at_period_end:
            return subscription
        return await self.cancel_at_period_end(subscription.user_id, reason)

    async def reactivate(self, user_id: UUID, now: Optional[datetime] = None) -> UserSubscription:
        """Undo a pending cancellation before the period ends."""
        subscription = await self._subscriptions.get_active_for_user(user_id, for_update=True)
        if subscription is None:
            raise NotFoundError("No active subscription", table="user_subscriptions")
        if not subscription.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled for cancellation")

        now = now or self._clock()
        subscription.cancel_at_period_end = False
        subscription.cancellation_reason = None
        subscription.cancellation_requested_at = None
        if subscription.billing_cycle == BillingCycle.MONTHLY.value:
            subscription.is_recurring = subscription.payment_type == PaymentType.RECURRING.value
        subscription.updated_at = now
        await self._subscriptions.save(subscription)

        logger.info(f"User {user_id} reactivated subscription {subscription.id}")
        return subscription

    async def update_selections(
        self,
        user_id: UUID,
        grade_id: Optional[UUID],
        subject_ids: List[UUID],
    ) -> UserSubscription:
        """
        One-time grade/subject setup.

        Selections can only be filled in while empty; changing them
        afterwards requires a new subscription.
        """
        subscription = await self._subscriptions.get_active_for_user(user_id, for_update=True)
        if subscription is None:
            raise NotFoundError("No active subscription", table="user_subscriptions")
        tier = await self._catalog.get_by_id(subscription.tier_id)

        if not (tier.can_select_grade or tier.can_select_subjects):
            raise ValidationError(f"Tier '{tier.name}' does not support selections")
        if subscription.selected_grade_id is not None or subscription.selected_subject_ids:
            raise ValidationError("Selections are already set for this subscription")
        if tier.can_select_grade and grade_id is None:
            raise ValidationError("A grade must be selected")
        if tier.can_select_subjects and not subject_ids:
            raise ValidationError("At least one subject must be selected")

        validate_selections(tier, grade_id, subject_ids)
        await self._check_catalog_references(grade_id, subject_ids)

        subscription.selected_grade_id = grade_id
        subscription.selected_subject_ids = list(subject_ids) if subject_ids else None
        subscription.updated_at = self._clock()
        await self._subscriptions.save(subscription)

        logger.info(
            f"User {user_id} set selections on {subscription.id}: "
            f"grade={grade_id}, subjects={len(subject_ids)}"
        )
        return subscription

    async def _check_catalog_references(
        self,
        grade_id: Optional[UUID],
        subject_ids: List[UUID],
    ) -> None:
        if self._papers is None:
            return
        if grade_id is not None and not await self._papers.grade_exists(grade_id):
            raise ValidationError(f"Unknown grade {grade_id}")
        if subject_ids and await self._papers.count_subjects(subject_ids) != len(set(subject_ids)):
            raise ValidationError("One or more subjects do not exist")

    # =========================================================================
    # Usage counters
    # =========================================================================

    async def record_token_usage(self, user_id: UUID, tokens: int) -> UsageResponse:
        if tokens <= 0:
            raise ValidationError("Token usage must be positive")
        await self.ensure_subscription(user_id)
        subscription = await self._subscriptions.get_active_for_user(user_id, for_update=True)
        subscription.tokens_used_current_period += tokens
        subscription.updated_at = self._clock()
        await self._subscriptions.save(subscription)
        return await self.get_usage(user_id)

    async def record_paper_access(self, user_id: UUID, paper_id: UUID) -> UserSubscription:
        """Count a paper once per period."""
        await self.ensure_subscription(user_id)
        subscription = await self._subscriptions.get_active_for_user(user_id, for_update=True)
        if paper_id in (subscription.accessed_paper_ids or []):
            return subscription

        subscription.accessed_paper_ids = [*(subscription.accessed_paper_ids or []), paper_id]
        subscription.papers_accessed_current_period += 1
        subscription.updated_at = self._clock()
        await self._subscriptions.save(subscription)
        return subscription
