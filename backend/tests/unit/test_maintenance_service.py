"""
Unit tests for the daily maintenance sweeps.
"""

from datetime import datetime, timezone
from uuid import uuid4

from app.domain.subscription import add_months
from app.infrastructure.db.models.payment import PaymentTransaction
from app.infrastructure.db.models.subscription import UserSubscription


def at(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def rows_for(store, user_id, status=None):
    return [
        r for r in store.rows("user_subscriptions")
        if r.user_id == user_id and (status is None or r.status == status)
    ]


async def subscribe(services, tier, user_id, **overrides):
    values = dict(
        user_id=user_id,
        tier_id=tier.id,
        amount=tier.price_monthly,
        currency="USD",
        billing_cycle="monthly",
        payment_provider="stripe",
        payment_type="recurring",
        status="completed",
        provisioning_status="not_started",
    )
    values.update(overrides)
    return await services.subscriptions.provision_from_payment(PaymentTransaction(**values))


class TestMonthlySweep:

    async def test_recurring_plan_is_refilled(self, services, tiers, user_id, clock):
        subscription = await subscribe(services, tiers["student"], user_id)
        await services.subscriptions.record_token_usage(user_id, 1200)
        await services.subscriptions.record_paper_access(user_id, uuid4())

        report = await services.maintenance.run(now=at(2026, 2, 20, 8, 0))

        assert report.periods_reset == 1
        assert report.success
        assert subscription.status == "active"
        assert subscription.tokens_used_current_period == 0
        assert subscription.papers_accessed_current_period == 0
        assert subscription.accessed_paper_ids == []
        assert subscription.period_start_date == at(2026, 2, 20, 8, 0)
        # Anchored on the old period end, not on the run time
        assert subscription.period_end_date == at(2026, 3, 15, 12, 0)

    async def test_missed_runs_catch_up(self, services, tiers, user_id):
        subscription = await subscribe(services, tiers["student"], user_id)

        await services.maintenance.run(now=at(2026, 4, 2))

        assert subscription.period_end_date == at(2026, 4, 15, 12, 0)

    async def test_cancelled_monthly_plan_is_downgraded(self, services, store, tiers, user_id):
        subscription = await subscribe(services, tiers["student"], user_id)
        await services.subscriptions.cancel_at_period_end(user_id, "too expensive")

        report = await services.maintenance.run(now=at(2026, 2, 16))

        assert report.monthly_downgrades == 1
        assert report.default_rows_created == 1
        assert subscription.status == "cancelled"
        [active] = rows_for(store, user_id, "active")
        assert active.tier_id == tiers["free"].id
        assert active.period_start_date == at(2026, 2, 16)

    async def test_one_time_plan_expires(self, services, store, tiers, user_id):
        subscription = await subscribe(
            services, tiers["student"], user_id, payment_provider="manual", payment_type="one_time"
        )

        await services.maintenance.run(now=at(2026, 2, 16))

        assert subscription.status == "expired"
        [active] = rows_for(store, user_id, "active")
        assert active.tier_id == tiers["free"].id

    async def test_current_periods_untouched(self, services, tiers, user_id):
        subscription = await subscribe(services, tiers["student"], user_id)
        await services.subscriptions.record_token_usage(user_id, 500)

        report = await services.maintenance.run(now=at(2026, 2, 1))

        assert report.periods_reset == 0
        assert subscription.tokens_used_current_period == 500

    async def test_rerun_is_a_noop(self, services, store, tiers, user_id):
        await subscribe(services, tiers["student"], user_id)
        await services.subscriptions.cancel_at_period_end(user_id)
        now = at(2026, 2, 16)

        await services.maintenance.run(now=now)
        second = await services.maintenance.run(now=now)

        assert second.monthly_downgrades == 0
        assert second.periods_reset == 0
        assert len(rows_for(store, user_id)) == 2

    async def test_row_failure_does_not_stop_batch(
        self, services, store, tiers, monkeypatch
    ):
        failing_user, healthy_user = uuid4(), uuid4()
        failing = await subscribe(services, tiers["student"], failing_user)
        await services.subscriptions.cancel_at_period_end(failing_user)
        healthy = await subscribe(services, tiers["pro"], healthy_user)

        async def broken_downgrade(subscription, now=None):
            raise RuntimeError("default tier lookup timed out")

        monkeypatch.setattr(services.subscriptions, "downgrade_to_default", broken_downgrade)

        report = await services.maintenance.run(now=at(2026, 2, 16))

        assert report.periods_reset == 1
        assert report.monthly_downgrades == 0
        assert not report.success
        [failure] = report.failures
        assert failure.sweep == "monthly_reset"
        assert failure.user_id == str(failing_user)
        assert "timed out" in failure.error
        assert failing.status == "active"
        assert healthy.period_end_date == at(2026, 3, 15, 12, 0)
        assert report.to_dict()["failures"][0]["subscription_id"] == str(failing.id)


class TestYearlySweep:

    async def test_yearly_plan_refills_monthly(self, services, tiers, user_id):
        subscription = await subscribe(
            services, tiers["student"], user_id,
            billing_cycle="yearly", amount=tiers["student"].price_yearly,
        )
        await services.subscriptions.record_token_usage(user_id, 9000)

        report = await services.maintenance.run(now=at(2026, 2, 16))

        assert report.periods_reset == 1
        assert report.yearly_expired == 0
        assert subscription.tokens_used_current_period == 0
        assert subscription.period_end_date == at(2026, 3, 15, 12, 0)
        assert subscription.subscription_end_date == at(2027, 1, 15, 12, 0)

    async def test_cancelled_yearly_plan_keeps_refilling(self, services, tiers, user_id):
        subscription = await subscribe(
            services, tiers["student"], user_id,
            billing_cycle="yearly", amount=tiers["student"].price_yearly,
        )
        await services.subscriptions.cancel_at_period_end(user_id)

        report = await services.maintenance.run(now=at(2026, 6, 20))

        assert report.periods_reset == 1
        assert subscription.status == "active"

    async def test_term_end_expires_to_single_default_row(self, services, store, tiers, user_id):
        # Two active yearly rows, as left behind by a bypassed index
        for tier in (tiers["student"], tiers["pro"]):
            store.put(UserSubscription(
                user_id=user_id,
                tier_id=tier.id,
                status="active",
                billing_cycle="yearly",
                is_recurring=False,
                period_start_date=at(2025, 12, 10),
                period_end_date=at(2026, 1, 10),
                subscription_end_date=at(2026, 1, 10),
                accessed_paper_ids=[],
            ))

        report = await services.maintenance.run(now=at(2026, 1, 12))

        assert report.periods_reset == 0
        assert report.yearly_expired == 2
        assert report.default_rows_created == 1
        assert len(rows_for(store, user_id, "expired")) == 2
        [active] = rows_for(store, user_id, "active")
        assert active.tier_id == tiers["free"].id

    async def test_yearly_rerun_is_a_noop(self, services, store, tiers, user_id):
        await subscribe(
            services, tiers["pro"], user_id,
            billing_cycle="yearly", amount=tiers["pro"].price_yearly,
        )
        now = at(2027, 2, 1)

        first = await services.maintenance.run(now=now)
        second = await services.maintenance.run(now=now)

        assert first.yearly_expired == 1
        assert second.yearly_expired == 0
        assert second.default_rows_created == 0
        assert len(rows_for(store, user_id, "active")) == 1

    async def test_yearly_row_without_term_end_keeps_refilling(self, services, store, tiers, user_id):
        subscription = store.put(UserSubscription(
            user_id=user_id,
            tier_id=tiers["student"].id,
            status="active",
            billing_cycle="yearly",
            is_recurring=False,
            period_start_date=at(2025, 12, 10),
            period_end_date=at(2026, 1, 10),
            subscription_end_date=None,
            tokens_used_current_period=999,
            accessed_paper_ids=[],
        ))

        first = await services.maintenance.run(now=at(2026, 2, 1))

        assert first.periods_reset == 1
        assert first.yearly_expired == 0
        assert subscription.status == "active"
        assert subscription.tokens_used_current_period == 0
        assert subscription.period_end_date == at(2026, 2, 10)

        for month in range(3, 8):
            report = await services.maintenance.run(now=at(2026, month, 1))
            assert report.periods_reset == 1

        assert subscription.status == "active"
        assert subscription.period_end_date == at(2026, 7, 10)

    async def test_monthly_runs_across_a_full_term(self, services, store, tiers, user_id):
        subscription = await subscribe(
            services, tiers["student"], user_id,
            billing_cycle="yearly", amount=tiers["student"].price_yearly,
        )
        term_end = subscription.subscription_end_date
        assert term_end == at(2027, 1, 15, 12, 0)

        # One run a day after each monthly anniversary, starting at purchase
        for month in range(12):
            await services.subscriptions.record_token_usage(user_id, 100)

            report = await services.maintenance.run(now=add_months(at(2026, 1, 16, 12, 0), month))

            assert report.success
            assert report.yearly_expired == 0
            assert report.periods_reset == (0 if month == 0 else 1)
            assert subscription.status == "active"
            assert subscription.period_end_date <= term_end
            if month:
                assert subscription.tokens_used_current_period == 0

        assert subscription.period_end_date == term_end

        report = await services.maintenance.run(now=add_months(at(2026, 1, 16, 12, 0), 12))

        assert report.periods_reset == 0
        assert report.yearly_expired == 1
        assert report.default_rows_created == 1
        assert subscription.status == "expired"
        [active] = rows_for(store, user_id, "active")
        assert active.tier_id == tiers["free"].id
