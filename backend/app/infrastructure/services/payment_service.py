"""
Payment Service

Payment transaction ledger: opens pending transactions, applies
provider outcomes, and hands completed payments to the subscription
state machine exactly once.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from app.domain.payment import CreatePaymentRequest, check_transition
from app.domain.subscription import (
    BillingCycle,
    PaymentProvider,
    PaymentStatus,
    PaymentType,
    ProvisioningStatus,
    validate_selections,
)
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.payment import PaymentTransaction
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.db.repositories.payment_repository import PaymentRepository
from app.infrastructure.exceptions import (
    ConfigurationError,
    DuplicateError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from app.infrastructure.services.subscription_service import SubscriptionService
from app.infrastructure.services.tier_catalog import TierCatalog


logger = logging.getLogger(__name__)

# provider_payload key holding the charge id that paid for the activation row
INITIAL_CHARGE_KEY = "initial_charge_id"


class PaymentService:
    """
    Ledger operations.

    A transaction moves pending -> completed | failed and never leaves
    completed. Completion locks the row, so concurrent webhook
    deliveries provision at most once.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        catalog: TierCatalog,
        subscriptions: SubscriptionService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._payments = payments
        self._catalog = catalog
        self._subscriptions = subscriptions
        self._clock = clock

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, transaction_id: UUID) -> PaymentTransaction:
        transaction = await self._payments.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                table="payment_transactions",
            )
        return transaction

    async def list_for_user(self, user_id: UUID) -> List[PaymentTransaction]:
        return await self._payments.list_for_user(user_id)

    async def find_by_external_id(
        self,
        provider: PaymentProvider,
        external_transaction_id: str,
    ) -> Optional[PaymentTransaction]:
        return await self._payments.get_by_external_id(provider.value, external_transaction_id)

    async def attach_external_reference(
        self,
        transaction: PaymentTransaction,
        external_transaction_id: str,
    ) -> PaymentTransaction:
        """Remember the provider's id for a pending row, e.g. a checkout session."""
        transaction.external_transaction_id = external_transaction_id
        transaction.updated_at = self._clock()
        return await self._payments.save(transaction)

    # =========================================================================
    # Ledger commands
    # =========================================================================

    async def create_pending(
        self,
        user_id: UUID,
        request: CreatePaymentRequest,
    ) -> PaymentTransaction:
        """
        Open a pending transaction for a purchasable tier.

        Raises:
            NotFoundError: unknown tier.
            ValidationError: tier not purchasable, or selections invalid.
            DuplicateError: provider reference already recorded.
        """
        if request.payment_provider == PaymentProvider.POINTS:
            raise ValidationError("Points purchases go through referral redemption")

        tier = await self._catalog.get_purchasable(request.tier_id)
        validate_selections(tier, request.selected_grade_id, request.selected_subject_ids)

        if request.external_transaction_id:
            existing = await self._payments.get_by_external_id(
                request.payment_provider.value, request.external_transaction_id
            )
            if existing is not None:
                raise DuplicateError(
                    f"Payment reference {request.external_transaction_id} already recorded",
                    operation="create",
                    table="payment_transactions",
                )

        amount = (
            tier.price_yearly
            if request.billing_cycle == BillingCycle.YEARLY
            else tier.price_monthly
        )
        transaction = PaymentTransaction(
            user_id=user_id,
            tier_id=tier.id,
            amount=Decimal(amount),
            currency=tier.currency,
            billing_cycle=request.billing_cycle.value,
            payment_provider=request.payment_provider.value,
            payment_type=request.payment_type.value,
            status=PaymentStatus.PENDING.value,
            provisioning_status=ProvisioningStatus.NOT_STARTED.value,
            external_transaction_id=request.external_transaction_id,
            selected_grade_id=request.selected_grade_id,
            selected_subject_ids=request.selected_subject_ids or None,
        )
        transaction = await self._payments.add(transaction)
        logger.info(
            f"Opened {request.payment_provider.value} transaction {transaction.id} "
            f"for user {user_id}: {tier.name}/{request.billing_cycle.value} {amount} {tier.currency}"
        )
        return transaction

    async def complete(
        self,
        transaction_id: UUID,
        external_transaction_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[UserSubscription]:
        """
        Mark a transaction completed and provision its subscription.

        Replays of an already-completed transaction return the
        subscription it provisioned and change nothing.

        Raises:
            NotFoundError: unknown transaction.
            InvalidTransitionError: transaction already failed.
            ProvisioningError: tier unknown/inactive; the transaction stays
                completed with provisioning_status=failed.
        """
        transaction = await self._payments.get_for_update(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                table="payment_transactions",
            )

        if not check_transition(transaction.status, PaymentStatus.COMPLETED):
            logger.info(f"Transaction {transaction_id} already completed, skipping")
            if transaction.subscription_id is not None:
                return await self._subscriptions.get_by_source_transaction(transaction.id)
            return None

        now = self._clock()
        transaction.status = PaymentStatus.COMPLETED.value
        transaction.completed_at = now
        transaction.updated_at = now
        if external_transaction_id and not transaction.external_transaction_id:
            transaction.external_transaction_id = external_transaction_id
        if provider_subscription_id:
            transaction.provider_subscription_id = provider_subscription_id
        if payload:
            transaction.provider_payload = {**(transaction.provider_payload or {}), **payload}
        await self._payments.save(transaction)

        logger.info(f"Transaction {transaction_id} completed")
        return await self._provision(transaction)

    async def fail(self, transaction_id: UUID, reason: str) -> PaymentTransaction:
        """
        Mark a pending transaction failed. Failing a failed row is a no-op.

        Raises:
            InvalidTransitionError: transaction already completed.
        """
        transaction = await self._payments.get_for_update(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                table="payment_transactions",
            )
        if not check_transition(transaction.status, PaymentStatus.FAILED):
            return transaction

        transaction.status = PaymentStatus.FAILED.value
        transaction.error_message = reason
        transaction.updated_at = self._clock()
        await self._payments.save(transaction)
        logger.warning(f"Transaction {transaction_id} failed: {reason}")
        return transaction

    async def approve_manual(
        self,
        transaction_id: UUID,
        admin_id: UUID,
        notes: Optional[str] = None,
    ) -> Optional[UserSubscription]:
        """Operator approval of a manual (mobile-money) payment."""
        transaction = await self._payments.get_for_update(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                table="payment_transactions",
            )
        if transaction.payment_provider != PaymentProvider.MANUAL.value:
            raise ValidationError(
                f"Transaction {transaction_id} is a {transaction.payment_provider} payment"
            )

        if transaction.status == PaymentStatus.PENDING.value:
            now = self._clock()
            transaction.approved_by = admin_id
            transaction.approved_at = now
            transaction.approval_notes = notes
            await self._payments.save(transaction)
            logger.info(f"Admin {admin_id} approved manual transaction {transaction_id}")

        return await self.complete(transaction_id)

    async def record_renewal(
        self,
        provider: PaymentProvider,
        provider_subscription_id: str,
        external_transaction_id: str,
        amount: Optional[Decimal] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[UserSubscription]:
        """
        Ledger entry for a provider-reported recurring charge.

        Clones the latest completed transaction of the provider subscription
        into a new completed row and provisions from it. Idempotent on the
        provider's charge id.

        Raises:
            NotFoundError: no earlier completed payment for this provider subscription.
        """
        existing = await self._payments.get_by_external_id(provider.value, external_transaction_id)
        if existing is not None:
            logger.info(f"Renewal {external_transaction_id} already recorded as {existing.id}")
            return await self._subscriptions.get_by_source_transaction(existing.id)

        # The first charge of a provider subscription belongs to the activation row
        activation = await self._payments.get_by_external_id(provider.value, provider_subscription_id)
        if activation is not None:
            initial_charge = (activation.provider_payload or {}).get(INITIAL_CHARGE_KEY)
            if initial_charge in (None, external_transaction_id):
                return await self._absorb_initial_charge(
                    activation, provider_subscription_id, external_transaction_id, payload
                )

        template = await self._payments.get_latest_completed_for_provider_subscription(
            provider.value, provider_subscription_id
        )
        if template is None:
            raise NotFoundError(
                f"No completed payment for {provider.value} subscription {provider_subscription_id}",
                table="payment_transactions",
            )

        now = self._clock()
        renewal = PaymentTransaction(
            user_id=template.user_id,
            tier_id=template.tier_id,
            amount=amount if amount is not None else template.amount,
            currency=template.currency,
            billing_cycle=template.billing_cycle,
            payment_provider=template.payment_provider,
            payment_type=PaymentType.RECURRING.value,
            status=PaymentStatus.COMPLETED.value,
            completed_at=now,
            provisioning_status=ProvisioningStatus.NOT_STARTED.value,
            external_transaction_id=external_transaction_id,
            provider_subscription_id=provider_subscription_id,
            selected_grade_id=template.selected_grade_id,
            selected_subject_ids=template.selected_subject_ids,
            provider_payload=payload,
        )
        try:
            async with self._payments.savepoint():
                renewal = await self._payments.add(renewal)
        except IntegrityError:
            logger.info(f"Renewal {external_transaction_id} recorded concurrently, skipping")
            return None

        logger.info(
            f"Recorded {provider.value} renewal {renewal.id} for subscription {provider_subscription_id}"
        )
        return await self._provision(renewal)

    async def redeem_with_points(
        self,
        user_id: UUID,
        tier: SubscriptionTier,
        selected_grade_id: Optional[UUID] = None,
        selected_subject_ids: Optional[List[UUID]] = None,
    ) -> UserSubscription:
        """Zero-amount completed transaction for a referral points redemption."""
        validate_selections(tier, selected_grade_id, selected_subject_ids)
        now = self._clock()
        transaction = PaymentTransaction(
            user_id=user_id,
            tier_id=tier.id,
            amount=Decimal("0"),
            currency=tier.currency,
            billing_cycle=BillingCycle.MONTHLY.value,
            payment_provider=PaymentProvider.POINTS.value,
            payment_type=PaymentType.ONE_TIME.value,
            status=PaymentStatus.COMPLETED.value,
            completed_at=now,
            provisioning_status=ProvisioningStatus.NOT_STARTED.value,
            selected_grade_id=selected_grade_id,
            selected_subject_ids=selected_subject_ids or None,
        )
        transaction = await self._payments.add(transaction)
        return await self._provision(transaction)

    async def reprovision(self, transaction_id: UUID) -> UserSubscription:
        """Operator retry for a completed transaction whose provisioning failed."""
        transaction = await self._payments.get_for_update(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                table="payment_transactions",
            )
        if transaction.status != PaymentStatus.COMPLETED.value:
            raise ValidationError(
                f"Transaction {transaction_id} is {transaction.status}, not completed"
            )
        if transaction.provisioning_status == ProvisioningStatus.PROVISIONED.value:
            return await self._subscriptions.get_by_source_transaction(transaction.id)
        return await self._provision(transaction)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _absorb_initial_charge(
        self,
        activation: PaymentTransaction,
        provider_subscription_id: str,
        charge_id: str,
        payload: Optional[Dict[str, Any]],
    ) -> Optional[UserSubscription]:
        activation_id = activation.id
        merged = {**(activation.provider_payload or {}), **(payload or {}), INITIAL_CHARGE_KEY: charge_id}

        if activation.status == PaymentStatus.PENDING.value:
            logger.info(f"Initial charge {charge_id} completes transaction {activation_id}")
            return await self.complete(
                activation_id,
                provider_subscription_id=provider_subscription_id,
                payload=merged,
            )

        if (activation.provider_payload or {}).get(INITIAL_CHARGE_KEY) != charge_id:
            activation.provider_payload = merged
            activation.updated_at = self._clock()
            await self._payments.save(activation)
            logger.info(f"Initial charge {charge_id} attached to transaction {activation_id}")
        return await self._subscriptions.get_by_source_transaction(activation_id)

    async def _provision(self, transaction: PaymentTransaction) -> UserSubscription:
        transaction_id = transaction.id
        try:
            async with self._payments.savepoint():
                subscription = await self._subscriptions.provision_from_payment(transaction)
        except (ProvisioningError, ValidationError, ConfigurationError) as e:
            transaction.provisioning_status = ProvisioningStatus.FAILED.value
            transaction.error_message = e.message
            transaction.updated_at = self._clock()
            await self._payments.save(transaction)
            logger.error(f"Provisioning failed for transaction {transaction_id}: {e.message}")
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(
                e.message,
                transaction_id=str(transaction_id),
                tier_id=str(transaction.tier_id),
                original_error=e,
            ) from e

        transaction.provisioning_status = ProvisioningStatus.PROVISIONED.value
        transaction.subscription_id = subscription.id
        transaction.error_message = None
        await self._payments.save(transaction)
        return subscription

