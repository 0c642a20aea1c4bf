"""
Payment Domain Models

DTOs and transition rules for the payment transaction ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.domain.subscription import (
    BillingCycle,
    PaymentProvider,
    PaymentStatus,
    PaymentType,
    ProvisioningStatus,
)
from app.infrastructure.exceptions import InvalidTransitionError


# Allowed ledger moves. Completed and failed rows are terminal.
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: set(),
    PaymentStatus.FAILED: set(),
}


def check_transition(current: str, target: PaymentStatus) -> bool:
    """
    Validate a ledger status change.

    Returns False when the row is already in the target state (a replay),
    True when the move should be applied.

    Raises:
        InvalidTransitionError: the move is not allowed.
    """
    current_status = PaymentStatus(current)
    if current_status == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(
            f"Cannot move payment from {current_status.value} to {target.value}",
            current_status=current_status.value,
            target_status=target.value,
        )
    return True


class CreatePaymentRequest(BaseModel):
    """Request DTO for opening a pending transaction."""
    tier_id: UUID
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    payment_provider: PaymentProvider
    payment_type: PaymentType = PaymentType.ONE_TIME
    selected_grade_id: Optional[UUID] = None
    selected_subject_ids: Optional[List[UUID]] = None
    external_transaction_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Provider reference, e.g. mobile-money receipt number",
    )
    success_url: Optional[str] = Field(default=None, max_length=2000)
    cancel_url: Optional[str] = Field(default=None, max_length=2000)


class ManualApprovalRequest(BaseModel):
    """Operator approval of a manual (mobile-money) payment."""
    admin_id: UUID
    notes: Optional[str] = Field(default=None, max_length=1000)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    tier_id: UUID
    amount: Decimal
    currency: str
    billing_cycle: BillingCycle
    payment_provider: PaymentProvider
    payment_type: PaymentType
    status: PaymentStatus
    provisioning_status: ProvisioningStatus
    subscription_id: Optional[UUID] = None
    external_transaction_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class CreatePaymentResponse(BaseModel):
    """Pending transaction plus the hosted checkout to send the user to, if any."""
    transaction: PaymentResponse
    checkout_url: Optional[str] = None
    checkout_session_id: Optional[str] = None
