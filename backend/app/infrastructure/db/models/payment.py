"""
Payment Transaction SQLModel

Append-only ledger of payment attempts across providers.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import Column, DateTime, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID as PGUUID
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class PaymentTransaction(UUIDMixin, TimestampMixin, table=True):
    """
    PaymentTransaction database table model.

    subscription_id is a plain column: user_subscriptions already points
    back here through source_transaction_id.
    """

    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint(
            "payment_provider",
            "external_transaction_id",
            name="uq_payment_transactions_provider_external_id",
        ),
    )

    user_id: UUID = Field(..., index=True, nullable=False)
    tier_id: UUID = Field(..., foreign_key="subscription_tiers.id", nullable=False)

    amount: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(10, 2), nullable=False),
    )
    currency: str = Field(default="USD", max_length=3)
    billing_cycle: str = Field(default="monthly", max_length=20)
    payment_provider: str = Field(..., max_length=20)
    payment_type: str = Field(default="one_time", max_length=20)
    status: str = Field(default="pending", max_length=20, index=True)

    external_transaction_id: Optional[str] = Field(
        default=None, sa_column=Column(String(255))
    )
    provider_subscription_id: Optional[str] = Field(
        default=None, sa_column=Column(String(255), index=True)
    )

    selected_grade_id: Optional[UUID] = Field(default=None)
    selected_subject_ids: Optional[List[UUID]] = Field(
        default=None,
        sa_column=Column(ARRAY(PGUUID(as_uuid=True))),
    )

    # Provisioning outcome
    provisioning_status: str = Field(default="not_started", max_length=20)
    subscription_id: Optional[UUID] = Field(default=None)
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Manual approval
    approved_by: Optional[UUID] = Field(default=None)
    approved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    approval_notes: Optional[str] = Field(default=None, sa_column=Column(Text))

    # "metadata" is reserved on declarative classes
    provider_payload: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSONB)
    )
