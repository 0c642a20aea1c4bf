"""
Referral Domain Models

Enums and DTOs for the referral points ledger.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class AwardLogStatus(str, Enum):
    """Outcome recorded for every award evaluation."""
    AWARDED = "awarded"
    SKIPPED = "skipped"
    ERROR = "error"


class PointsTransactionType(str, Enum):
    EARNED = "earned"
    SPENT = "spent"


class SkipReason:
    SUBSCRIPTION_NOT_FOUND = "subscription not found"
    ZERO_POINTS = "zero points for tier"
    NOT_REFERRED = "not referred"
    ALREADY_AWARDED = "already awarded"
    POINTS_REDEMPTION = "points redemption"


# =============================================================================
# Request/Response DTOs
# =============================================================================

class ApplyReferralCodeRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=32)


class RedeemPointsRequest(BaseModel):
    """Spend referral points on one month of a tier."""
    tier_id: UUID
    selected_grade_id: Optional[UUID] = None
    selected_subject_ids: Optional[List[UUID]] = None


class ReferralSummaryResponse(BaseModel):
    code: str
    points_balance: int
    total_earned: int
    total_spent: int
    total_referrals: int
    successful_referrals: int


class AwardLogResponse(BaseModel):
    """Persisted result of one award evaluation."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    user_id: Optional[UUID] = None
    referrer_id: Optional[UUID] = None
    tier_name: Optional[str] = None
    points: int
    status: AwardLogStatus
    reason: Optional[str] = None
    created_at: datetime
