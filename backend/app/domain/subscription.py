"""
Subscription Domain Models

Enums, DTOs, and pure business rules for the subscription bounded context.
Nothing in this module touches the database: services load rows, call
these rules, and persist the result.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.infrastructure.exceptions import ValidationError


class BillingCycle(str, Enum):
    """How often a plan is paid for."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Subscription row lifecycle status."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Ledger status of a payment attempt."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentProvider(str, Enum):
    """Where a payment came from."""
    STRIPE = "stripe"
    PAYPAL = "paypal"
    MANUAL = "manual"
    POINTS = "points"


class PaymentType(str, Enum):
    """Whether the provider charges again automatically."""
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class ProvisioningStatus(str, Enum):
    """Outcome of turning a completed payment into a subscription."""
    NOT_STARTED = "not_started"
    PROVISIONED = "provisioned"
    FAILED = "failed"


# Sentinel for "no limit" in API payloads
UNLIMITED = -1


# =============================================================================
# Request/Response DTOs
# =============================================================================

class TierResponse(BaseModel):
    """Public view of a catalog tier."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    display_name: str
    description: Optional[str] = None
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str
    token_limit: Optional[int] = None
    papers_limit: Optional[int] = None
    max_subjects: Optional[int] = None
    can_select_grade: bool
    can_select_subjects: bool
    coming_soon: bool
    points_cost: Optional[int] = None
    display_order: int


class SubscriptionStatusResponse(BaseModel):
    """Response DTO for the caller's active subscription."""
    subscription_id: UUID
    tier_id: UUID
    tier_name: str
    tier_display_name: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    is_recurring: bool
    cancel_at_period_end: bool
    period_start_date: datetime
    period_end_date: datetime
    subscription_end_date: Optional[datetime] = None
    selected_grade_id: Optional[UUID] = None
    selected_subject_ids: Optional[List[UUID]] = None
    payment_provider: Optional[str] = None


class UsageResponse(BaseModel):
    """Quota usage for the current period. -1 means unlimited."""
    tokens_used: int
    token_limit: int = Field(description="Effective token limit (-1 = unlimited)")
    tokens_remaining: int = Field(description="Tokens left this period (-1 = unlimited)")
    papers_accessed: int
    papers_limit: int = Field(description="Paper limit (-1 = unlimited)")
    can_chat: bool
    period_end_date: datetime


class SelectionUpdateRequest(BaseModel):
    """One-time grade/subject setup for selection-capable tiers."""
    grade_id: Optional[UUID] = None
    subject_ids: List[UUID] = Field(default_factory=list)


class CancelRequest(BaseModel):
    """Request DTO for cancelling at period end."""
    reason: Optional[str] = Field(default=None, max_length=500)


class TokenUsageRequest(BaseModel):
    tokens: int = Field(..., gt=0)


class ChangeTierRequest(BaseModel):
    """Operator request to move a user to another tier outside the ledger."""
    tier_id: UUID
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    selected_grade_id: Optional[UUID] = None
    selected_subject_ids: Optional[List[UUID]] = None


# =============================================================================
# Date arithmetic
# =============================================================================

def add_months(moment: datetime, months: int) -> datetime:
    """
    Shift a datetime by whole calendar months.

    The day is clamped to the last day of the target month, so
    Jan 31 + 1 month is Feb 28 (or 29), matching Postgres interval math.
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class ProvisioningPeriods:
    period_start: datetime
    period_end: datetime
    subscription_end: Optional[datetime]


def compute_provisioning_periods(
    billing_cycle: BillingCycle,
    now: datetime,
    period_months: int = 1,
    term_months: int = 12,
) -> ProvisioningPeriods:
    """
    Dates for a freshly provisioned subscription.

    Quota periods are always monthly; only yearly plans carry a hard
    subscription end.
    """
    subscription_end = None
    if billing_cycle == BillingCycle.YEARLY:
        subscription_end = add_months(now, term_months)
    return ProvisioningPeriods(
        period_start=now,
        period_end=add_months(now, period_months),
        subscription_end=subscription_end,
    )


def next_period_end(
    period_end: datetime,
    now: datetime,
    period_months: int = 1,
    subscription_end: Optional[datetime] = None,
) -> datetime:
    """
    Advance a lapsed period end by whole periods until it is in the future.

    Missed cron runs therefore catch up in one step. The result never
    passes the yearly hard limit.
    """
    candidate = period_end
    steps = 0
    while candidate <= now:
        steps += period_months
        candidate = add_months(period_end, steps)
    if subscription_end is not None and candidate > subscription_end:
        candidate = subscription_end
    return candidate


# =============================================================================
# Grade / subject selections
# =============================================================================

@dataclass(frozen=True)
class Selections:
    grade_id: Optional[UUID] = None
    subject_ids: Optional[List[UUID]] = None

    @property
    def is_empty(self) -> bool:
        return self.grade_id is None and not self.subject_ids


def validate_selections(tier, grade_id: Optional[UUID], subject_ids: Optional[Sequence[UUID]]) -> None:
    """
    Check incoming selections against the tier's capability flags.

    Raises:
        ValidationError: tier cannot select, or too many subjects.
    """
    if grade_id is not None and not tier.can_select_grade:
        raise ValidationError(
            f"Tier '{tier.name}' does not allow grade selection",
            {"tier": tier.name},
        )

    if subject_ids:
        if not tier.can_select_subjects:
            raise ValidationError(
                f"Tier '{tier.name}' does not allow subject selection",
                {"tier": tier.name},
            )
        if len(set(subject_ids)) != len(subject_ids):
            raise ValidationError("Duplicate subjects in selection")
        if tier.max_subjects is not None and len(subject_ids) > tier.max_subjects:
            raise ValidationError(
                f"Tier '{tier.name}' allows at most {tier.max_subjects} subjects",
                {"max_subjects": tier.max_subjects, "selected": len(subject_ids)},
            )


def merge_selections(
    tier,
    incoming: Selections,
    previous: Optional[Selections],
    tier_changed: bool,
) -> Selections:
    """
    Selections for a new subscription row.

    Incoming non-null values always win. A null incoming value inherits
    the previous row's value only when the tier is unchanged and still
    capable of that selection; otherwise it is cleared.
    """
    validate_selections(tier, incoming.grade_id, incoming.subject_ids)

    inherit = previous is not None and not tier_changed

    grade_id = incoming.grade_id
    if grade_id is None and inherit and tier.can_select_grade:
        grade_id = previous.grade_id
    if not tier.can_select_grade:
        grade_id = None

    subject_ids = list(incoming.subject_ids) if incoming.subject_ids else None
    if subject_ids is None and inherit and tier.can_select_subjects and previous.subject_ids:
        subject_ids = list(previous.subject_ids)
    if not tier.can_select_subjects:
        subject_ids = None

    return Selections(grade_id=grade_id, subject_ids=subject_ids)


# =============================================================================
# Token quota
# =============================================================================

def effective_token_limit(token_limit: Optional[int], token_limit_override: Optional[int]) -> Optional[int]:
    """Token limit for the current period; None means unlimited."""
    if token_limit is None:
        return None
    if token_limit_override is not None:
        return token_limit_override
    return token_limit


def carryover_token_limit(
    old_limit: Optional[int],
    old_used: int,
    new_limit: Optional[int],
) -> Optional[int]:
    """
    Override for a new row that keeps the unused remainder of the old one.

    Returns None when there is nothing to carry (unlimited on either side
    or no remainder).
    """
    if old_limit is None or new_limit is None:
        return None
    remaining = old_limit - old_used
    if remaining <= 0:
        return None
    return new_limit + remaining


def tokens_remaining(limit: Optional[int], used: int) -> int:
    if limit is None:
        return UNLIMITED
    return max(limit - used, 0)


# =============================================================================
# Period maintenance decisions
# =============================================================================

class LapseAction(str, Enum):
    """What the monthly sweep does with a row whose period has ended."""
    RESET = "reset"
    DOWNGRADE = "downgrade"
    DEFER_TO_EXPIRY = "defer_to_expiry"


def classify_lapsed_period(subscription, now: datetime) -> LapseAction:
    """
    Decide the monthly sweep outcome for an active row with period_end < now.

    Yearly plans refill every month until their term ends, even after a
    cancellation request. A yearly row without a recorded term end keeps
    refilling unclamped, since the expiry sweep can never select it.
    Monthly plans renew only while recurring and not cancelled.
    """
    if subscription.billing_cycle == BillingCycle.YEARLY.value:
        term_end = subscription.subscription_end_date
        if term_end is None or term_end > now:
            return LapseAction.RESET
        return LapseAction.DEFER_TO_EXPIRY

    if subscription.is_recurring and not subscription.cancel_at_period_end:
        return LapseAction.RESET
    return LapseAction.DOWNGRADE


@dataclass
class RowFailure:
    sweep: str
    subscription_id: Optional[str]
    user_id: Optional[str]
    error: str


@dataclass
class MaintenanceReport:
    """Result of one maintenance run."""
    started_at: datetime
    periods_reset: int = 0
    monthly_downgrades: int = 0
    yearly_expired: int = 0
    default_rows_created: int = 0
    failures: List[RowFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "success": self.success,
            "periods_reset": self.periods_reset,
            "monthly_downgrades": self.monthly_downgrades,
            "yearly_expired": self.yearly_expired,
            "default_rows_created": self.default_rows_created,
            "failures": [f.__dict__ for f in self.failures],
        }
