"""
Referral Routes

Referral code, balance and points redemption for the signed-in user.
"""

import logging

from fastapi import APIRouter, status

from app.api.dependencies import CurrentUserId, ServicesDep
from app.api.routes.subscriptions import to_status_response
from app.domain.referral import (
    ApplyReferralCodeRequest,
    RedeemPointsRequest,
    ReferralSummaryResponse,
)
from app.domain.subscription import SubscriptionStatusResponse


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/referrals/me", response_model=ReferralSummaryResponse)
async def get_my_referrals(user_id: CurrentUserId, services: ServicesDep):
    """Own referral code (created on first call) and points totals."""
    return await services.referrals.get_summary(user_id)


@router.post("/referrals/apply", status_code=status.HTTP_201_CREATED)
async def apply_referral_code(
    request: ApplyReferralCodeRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
):
    referral = await services.referrals.apply_code(user_id, request.code)
    return {"referral_id": str(referral.id), "referrer_id": str(referral.referrer_id)}


@router.post("/referrals/redeem", response_model=SubscriptionStatusResponse)
async def redeem_points(
    request: RedeemPointsRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
):
    """Spend points on one month of a tier."""
    subscription = await services.referrals.redeem_points(
        user_id,
        request.tier_id,
        request.selected_grade_id,
        request.selected_subject_ids,
    )
    tier = await services.catalog.get_by_id(subscription.tier_id)
    return to_status_response(subscription, tier)
