"""
Unit tests for the pure lifecycle rules: date arithmetic, quota
carry-over, lapse decisions, selections and ledger transitions.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from app.domain.payment import check_transition
from app.domain.subscription import (
    BillingCycle,
    LapseAction,
    PaymentStatus,
    Selections,
    add_months,
    carryover_token_limit,
    classify_lapsed_period,
    compute_provisioning_periods,
    effective_token_limit,
    merge_selections,
    next_period_end,
    tokens_remaining,
    validate_selections,
)
from app.infrastructure.exceptions import InvalidTransitionError, ValidationError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def tier(**overrides):
    values = dict(
        name="student",
        can_select_grade=True,
        can_select_subjects=True,
        max_subjects=3,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


# =============================================================================
# Dates
# =============================================================================

class TestDates:

    def test_add_months_clamps_to_month_end(self):
        assert add_months(utc(2026, 1, 31), 1) == utc(2026, 2, 28)
        assert add_months(utc(2028, 1, 31), 1) == utc(2028, 2, 29)

    def test_add_months_crosses_year(self):
        assert add_months(utc(2026, 11, 15, 8, 30), 3) == utc(2027, 2, 15, 8, 30)

    def test_monthly_periods_have_no_hard_end(self):
        periods = compute_provisioning_periods(BillingCycle.MONTHLY, utc(2026, 1, 15))

        assert periods.period_start == utc(2026, 1, 15)
        assert periods.period_end == utc(2026, 2, 15)
        assert periods.subscription_end is None

    def test_yearly_periods_refill_monthly(self):
        periods = compute_provisioning_periods(BillingCycle.YEARLY, utc(2026, 1, 15))

        assert periods.period_end == utc(2026, 2, 15)
        assert periods.subscription_end == utc(2027, 1, 15)

    def test_next_period_end_catches_up_missed_runs(self):
        # Three months of missed cron runs advance in one step
        assert next_period_end(utc(2026, 2, 15), utc(2026, 4, 20)) == utc(2026, 5, 15)

    def test_next_period_end_is_strictly_in_the_future(self):
        assert next_period_end(utc(2026, 2, 15), utc(2026, 2, 15)) == utc(2026, 3, 15)

    def test_next_period_end_stops_at_yearly_limit(self):
        result = next_period_end(
            utc(2026, 12, 20), utc(2026, 12, 21), subscription_end=utc(2027, 1, 10)
        )
        assert result == utc(2027, 1, 10)


# =============================================================================
# Token quota
# =============================================================================

class TestTokenQuota:

    def test_effective_limit_prefers_override(self):
        assert effective_token_limit(50000, None) == 50000
        assert effective_token_limit(500000, 540000) == 540000

    def test_unlimited_tier_ignores_override(self):
        assert effective_token_limit(None, 540000) is None

    def test_carryover_adds_unused_remainder(self):
        assert carryover_token_limit(50000, 10000, 500000) == 540000

    def test_nothing_to_carry(self):
        assert carryover_token_limit(50000, 50000, 500000) is None
        assert carryover_token_limit(50000, 60000, 500000) is None
        assert carryover_token_limit(None, 0, 500000) is None
        assert carryover_token_limit(50000, 0, None) is None

    def test_tokens_remaining(self):
        assert tokens_remaining(100, 30) == 70
        assert tokens_remaining(100, 130) == 0
        assert tokens_remaining(None, 130) == -1


# =============================================================================
# Lapse decisions
# =============================================================================

class TestClassifyLapsedPeriod:
    NOW = utc(2026, 3, 1)

    def row(self, **overrides):
        values = dict(
            billing_cycle="monthly",
            is_recurring=True,
            cancel_at_period_end=False,
            subscription_end_date=None,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_recurring_monthly_resets(self):
        assert classify_lapsed_period(self.row(), self.NOW) == LapseAction.RESET

    def test_cancelled_monthly_downgrades(self):
        row = self.row(cancel_at_period_end=True)
        assert classify_lapsed_period(row, self.NOW) == LapseAction.DOWNGRADE

    def test_one_time_monthly_downgrades(self):
        row = self.row(is_recurring=False)
        assert classify_lapsed_period(row, self.NOW) == LapseAction.DOWNGRADE

    def test_yearly_within_term_resets_even_when_cancelled(self):
        row = self.row(
            billing_cycle="yearly",
            cancel_at_period_end=True,
            subscription_end_date=utc(2026, 9, 1),
        )
        assert classify_lapsed_period(row, self.NOW) == LapseAction.RESET

    def test_yearly_without_term_end_resets(self):
        row = self.row(billing_cycle="yearly", is_recurring=False, subscription_end_date=None)
        assert classify_lapsed_period(row, self.NOW) == LapseAction.RESET

    def test_yearly_past_term_is_left_to_expiry(self):
        row = self.row(billing_cycle="yearly", subscription_end_date=utc(2026, 2, 1))
        assert classify_lapsed_period(row, self.NOW) == LapseAction.DEFER_TO_EXPIRY


# =============================================================================
# Selections
# =============================================================================

class TestSelections:

    def test_grade_rejected_on_tier_without_grade_selection(self):
        with pytest.raises(ValidationError, match="grade selection"):
            validate_selections(tier(can_select_grade=False), uuid4(), None)

    def test_too_many_subjects(self):
        with pytest.raises(ValidationError, match="at most 1"):
            validate_selections(tier(max_subjects=1), None, [uuid4(), uuid4()])

    def test_duplicate_subjects(self):
        subject = uuid4()
        with pytest.raises(ValidationError, match="Duplicate"):
            validate_selections(tier(), None, [subject, subject])

    def test_incoming_values_win(self):
        grade, subject = uuid4(), uuid4()
        previous = Selections(grade_id=uuid4(), subject_ids=[uuid4()])

        merged = merge_selections(
            tier(), Selections(grade_id=grade, subject_ids=[subject]), previous, tier_changed=False
        )
        assert merged == Selections(grade_id=grade, subject_ids=[subject])

    def test_same_tier_inherits_previous(self):
        previous = Selections(grade_id=uuid4(), subject_ids=[uuid4()])

        merged = merge_selections(tier(), Selections(), previous, tier_changed=False)
        assert merged == previous

    def test_tier_change_clears_selections(self):
        previous = Selections(grade_id=uuid4(), subject_ids=[uuid4()])

        merged = merge_selections(tier(), Selections(), previous, tier_changed=True)
        assert merged.is_empty

    def test_incapable_tier_drops_selections(self):
        plain = tier(can_select_grade=False, can_select_subjects=False)
        previous = Selections(grade_id=uuid4(), subject_ids=[uuid4()])

        merged = merge_selections(plain, Selections(), previous, tier_changed=False)
        assert merged.is_empty


# =============================================================================
# Ledger transitions
# =============================================================================

class TestPaymentTransitions:

    @pytest.mark.parametrize("target", [PaymentStatus.COMPLETED, PaymentStatus.FAILED])
    def test_pending_moves_forward(self, target):
        assert check_transition("pending", target) is True

    def test_same_status_is_a_replay(self):
        assert check_transition("completed", PaymentStatus.COMPLETED) is False
        assert check_transition("failed", PaymentStatus.FAILED) is False

    def test_completed_is_terminal(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("completed", PaymentStatus.FAILED)

    def test_failed_cannot_complete(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition("failed", PaymentStatus.COMPLETED)
        assert exc_info.value.details["current_status"] == "failed"
