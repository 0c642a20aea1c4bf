"""
Unit tests for the payment ledger: pending transactions, provider
outcomes, exactly-once provisioning and recurring renewals.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from app.domain.payment import CreatePaymentRequest
from app.domain.subscription import BillingCycle, PaymentProvider, PaymentType
from app.infrastructure.exceptions import (
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from app.infrastructure.services.payment_service import INITIAL_CHARGE_KEY


def payment_request(tier, provider=PaymentProvider.STRIPE, **overrides) -> CreatePaymentRequest:
    values = dict(tier_id=tier.id, payment_provider=provider)
    values.update(overrides)
    return CreatePaymentRequest(**values)


def subscription_rows(store, user_id):
    return [r for r in store.rows("user_subscriptions") if r.user_id == user_id]


class TestCreatePending:

    async def test_monthly_price(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )

        assert transaction.status == "pending"
        assert transaction.provisioning_status == "not_started"
        assert transaction.amount == Decimal("9.99")
        assert transaction.billing_cycle == "monthly"

    async def test_yearly_price(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"], billing_cycle=BillingCycle.YEARLY)
        )

        assert transaction.amount == Decimal("99.99")

    async def test_free_tier_cannot_be_bought(self, services, tiers, user_id):
        with pytest.raises(ValidationError, match="cannot be purchased"):
            await services.payments.create_pending(user_id, payment_request(tiers["free"]))

    async def test_coming_soon_tier_cannot_be_bought(self, services, tiers, user_id):
        with pytest.raises(ValidationError, match="not available yet"):
            await services.payments.create_pending(user_id, payment_request(tiers["family"]))

    async def test_unknown_tier(self, services, tiers, user_id):
        request = CreatePaymentRequest(tier_id=uuid4(), payment_provider=PaymentProvider.STRIPE)

        with pytest.raises(NotFoundError):
            await services.payments.create_pending(user_id, request)

    async def test_points_go_through_redemption(self, services, tiers, user_id):
        with pytest.raises(ValidationError, match="referral redemption"):
            await services.payments.create_pending(
                user_id, payment_request(tiers["student"], PaymentProvider.POINTS)
            )

    async def test_selections_checked_against_tier(self, services, tiers, user_id):
        with pytest.raises(ValidationError, match="grade selection"):
            await services.payments.create_pending(
                user_id, payment_request(tiers["pro"], selected_grade_id=uuid4())
            )

    async def test_duplicate_provider_reference(self, services, tiers, user_id):
        request = payment_request(
            tiers["student"], PaymentProvider.MANUAL, external_transaction_id="MM-1001"
        )
        await services.payments.create_pending(user_id, request)

        with pytest.raises(DuplicateError):
            await services.payments.create_pending(uuid4(), request)


class TestPurchasableTiers:

    async def test_paid_active_tiers(self, services, tiers):
        for name in ("student_lite", "student", "pro"):
            assert await services.catalog.is_purchasable(tiers[name])

    async def test_default_tier_is_not_for_sale(self, services, tiers):
        assert not await services.catalog.is_purchasable(tiers["free"])

    async def test_coming_soon_and_inactive(self, services, tiers):
        tiers["pro"].is_active = False

        assert not await services.catalog.is_purchasable(tiers["family"])
        assert not await services.catalog.is_purchasable(tiers["pro"])

    async def test_lookup_by_name(self, services, tiers):
        assert (await services.catalog.get_by_name("student")).id == tiers["student"].id
        assert await services.catalog.get_by_name("platinum") is None


class TestCompletion:

    async def test_complete_provisions_subscription(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )

        subscription = await services.payments.complete(
            transaction.id, external_transaction_id="pi_1", payload={"customer": "cus_1"}
        )

        assert transaction.status == "completed"
        assert transaction.provisioning_status == "provisioned"
        assert transaction.subscription_id == subscription.id
        assert transaction.external_transaction_id == "pi_1"
        assert transaction.provider_payload == {"customer": "cus_1"}
        assert subscription.tier_id == tiers["student"].id
        assert subscription.source_transaction_id == transaction.id

    async def test_replay_returns_same_subscription(self, services, store, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )

        first = await services.payments.complete(transaction.id)
        second = await services.payments.complete(transaction.id)

        assert first.id == second.id
        assert len(subscription_rows(store, user_id)) == 1

    async def test_failed_transaction_cannot_complete(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )
        await services.payments.fail(transaction.id, "card declined")

        with pytest.raises(InvalidTransitionError):
            await services.payments.complete(transaction.id)
        assert transaction.error_message == "card declined"

    async def test_completed_transaction_cannot_fail(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )
        await services.payments.complete(transaction.id)

        with pytest.raises(InvalidTransitionError):
            await services.payments.fail(transaction.id, "late failure")

    async def test_failing_twice_is_a_noop(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )
        await services.payments.fail(transaction.id, "first")

        again = await services.payments.fail(transaction.id, "second")

        assert again.error_message == "first"

    async def test_unknown_transaction(self, services):
        with pytest.raises(NotFoundError):
            await services.payments.complete(uuid4())

    async def test_provisioning_failure_keeps_payment(self, services, store, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )
        tiers["student"].is_active = False

        with pytest.raises(ProvisioningError):
            await services.payments.complete(transaction.id)

        assert transaction.status == "completed"
        assert transaction.provisioning_status == "failed"
        assert "does not exist or is inactive" in transaction.error_message
        assert subscription_rows(store, user_id) == []

    async def test_stale_selections_mark_provisioning_failed(self, services, store, tiers, user_id):
        subjects = [uuid4(), uuid4(), uuid4()]
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"], selected_subject_ids=subjects)
        )
        # Operator tightened the tier while the payment was open
        tiers["student"].max_subjects = 1

        with pytest.raises(ProvisioningError, match="at most 1 subjects") as exc_info:
            await services.payments.complete(transaction.id)

        assert isinstance(exc_info.value.original_error, ValidationError)
        assert exc_info.value.details["transaction_id"] == str(transaction.id)
        assert transaction.status == "completed"
        assert transaction.provisioning_status == "failed"
        assert "at most 1 subjects" in transaction.error_message
        assert subscription_rows(store, user_id) == []

    async def test_reprovision_after_fix(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )
        tiers["student"].is_active = False
        with pytest.raises(ProvisioningError):
            await services.payments.complete(transaction.id)

        tiers["student"].is_active = True
        subscription = await services.payments.reprovision(transaction.id)

        assert transaction.provisioning_status == "provisioned"
        assert transaction.error_message is None
        assert subscription.source_transaction_id == transaction.id

    async def test_reprovision_needs_completed_payment(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )

        with pytest.raises(ValidationError, match="not completed"):
            await services.payments.reprovision(transaction.id)


class TestManualApproval:

    async def test_approval_provisions(self, services, tiers, user_id, clock):
        admin_id = uuid4()
        transaction = await services.payments.create_pending(
            user_id,
            payment_request(tiers["student"], PaymentProvider.MANUAL, external_transaction_id="MM-7"),
        )

        subscription = await services.payments.approve_manual(transaction.id, admin_id, "receipt ok")

        assert transaction.approved_by == admin_id
        assert transaction.approved_at == clock.now
        assert transaction.approval_notes == "receipt ok"
        assert transaction.status == "completed"
        assert subscription.payment_provider == "manual"

    async def test_only_manual_payments_are_approved(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"])
        )

        with pytest.raises(ValidationError, match="stripe payment"):
            await services.payments.approve_manual(transaction.id, uuid4())


class TestStripeRenewals:

    async def subscribe(self, services, tiers, user_id):
        transaction = await services.payments.create_pending(
            user_id, payment_request(tiers["student"], payment_type=PaymentType.RECURRING)
        )
        await services.payments.attach_external_reference(transaction, "cs_1")
        subscription = await services.payments.complete(
            transaction.id, external_transaction_id="pi_1", provider_subscription_id="sub_1"
        )
        return transaction, subscription

    async def test_renewal_creates_new_row(self, services, store, tiers, user_id, clock):
        transaction, first = await self.subscribe(services, tiers, user_id)
        # Session id recorded at checkout is kept
        assert transaction.external_transaction_id == "cs_1"
        clock.advance(days=31)

        renewed = await services.payments.record_renewal(
            PaymentProvider.STRIPE, "sub_1", "in_2", amount=Decimal("9.99")
        )

        assert first.status == "expired"
        assert renewed.status == "active"
        assert renewed.provider_subscription_id == "sub_1"
        assert renewed.period_start_date == clock.now
        renewal = await services.payments.find_by_external_id(PaymentProvider.STRIPE, "in_2")
        assert renewal.status == "completed"
        assert renewal.payment_type == "recurring"
        assert renewal.provisioning_status == "provisioned"

    async def test_renewal_is_idempotent_on_charge_id(self, services, store, tiers, user_id):
        await self.subscribe(services, tiers, user_id)

        first = await services.payments.record_renewal(PaymentProvider.STRIPE, "sub_1", "in_2")
        second = await services.payments.record_renewal(PaymentProvider.STRIPE, "sub_1", "in_2")

        assert first.id == second.id
        assert len(store.rows("payment_transactions")) == 2

    async def test_renewal_without_prior_payment(self, services):
        with pytest.raises(NotFoundError):
            await services.payments.record_renewal(PaymentProvider.STRIPE, "sub_unknown", "in_1")


class TestPayPalInitialCharge:

    async def open_subscription(self, services, tiers, user_id, billing_id):
        return await services.payments.create_pending(
            user_id,
            payment_request(
                tiers["student"],
                PaymentProvider.PAYPAL,
                payment_type=PaymentType.RECURRING,
                external_transaction_id=billing_id,
            ),
        )

    async def test_first_sale_belongs_to_activation(self, services, store, tiers, user_id):
        activation = await self.open_subscription(services, tiers, user_id, "I-SUB1")
        subscription = await services.payments.complete(
            activation.id, provider_subscription_id="I-SUB1"
        )

        result = await services.payments.record_renewal(PaymentProvider.PAYPAL, "I-SUB1", "SALE-1")
        replay = await services.payments.record_renewal(PaymentProvider.PAYPAL, "I-SUB1", "SALE-1")

        assert result.id == subscription.id
        assert replay.id == subscription.id
        assert activation.provider_payload[INITIAL_CHARGE_KEY] == "SALE-1"
        assert len(store.rows("payment_transactions")) == 1
        assert len(subscription_rows(store, user_id)) == 1

    async def test_second_sale_is_a_renewal(self, services, store, tiers, user_id, clock):
        activation = await self.open_subscription(services, tiers, user_id, "I-SUB1")
        first = await services.payments.complete(activation.id, provider_subscription_id="I-SUB1")
        await services.payments.record_renewal(PaymentProvider.PAYPAL, "I-SUB1", "SALE-1")
        clock.advance(days=30)

        renewed = await services.payments.record_renewal(PaymentProvider.PAYPAL, "I-SUB1", "SALE-2")

        assert renewed.id != first.id
        assert first.status == "expired"
        assert len(store.rows("payment_transactions")) == 2

    async def test_sale_before_activation_completes_it(self, services, store, tiers, user_id):
        activation = await self.open_subscription(services, tiers, user_id, "I-SUB2")

        subscription = await services.payments.record_renewal(
            PaymentProvider.PAYPAL, "I-SUB2", "SALE-9", payload={"sale_state": "completed"}
        )
        # BILLING.SUBSCRIPTION.ACTIVATED arriving afterwards is a replay
        replay = await services.payments.complete(activation.id, provider_subscription_id="I-SUB2")

        assert activation.status == "completed"
        assert activation.provider_subscription_id == "I-SUB2"
        assert activation.provider_payload[INITIAL_CHARGE_KEY] == "SALE-9"
        assert subscription.source_transaction_id == activation.id
        assert replay.id == subscription.id
        assert len(subscription_rows(store, user_id)) == 1
