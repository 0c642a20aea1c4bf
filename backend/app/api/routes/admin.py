"""
Admin Routes

Operator endpoints: maintenance runs, manual payment approval,
reprovisioning, tier changes and referral backfills.
Protected by the X-Admin-Key header.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.api.dependencies import ServicesDep, verify_admin_api_key
from app.api.routes.subscriptions import to_status_response
from app.domain.payment import ManualApprovalRequest, PaymentResponse
from app.domain.referral import AwardLogResponse
from app.domain.subscription import ChangeTierRequest, SubscriptionStatusResponse
from app.infrastructure.exceptions import ProvisioningError


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_api_key)],
)


def provisioning_failed_response(e: ProvisioningError) -> JSONResponse:
    """
    422 that still lets the session commit.

    Returned rather than raised so the failed provisioning_status is kept.
    """
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=e.to_dict())


@router.post("/maintenance/run")
async def run_maintenance(services: ServicesDep):
    """Run both maintenance sweeps now. Safe to repeat."""
    report = await services.maintenance.run()
    if report.failures:
        logger.warning(f"Maintenance finished with {len(report.failures)} failure(s)")
    return report.to_dict()


# =============================================================================
# Payments
# =============================================================================

@router.post("/payments/{transaction_id}/approve", response_model=PaymentResponse)
async def approve_manual_payment(
    transaction_id: UUID,
    request: ManualApprovalRequest,
    services: ServicesDep,
):
    """Approve a mobile-money payment and provision it."""
    try:
        await services.payments.approve_manual(transaction_id, request.admin_id, request.notes)
    except ProvisioningError as e:
        return provisioning_failed_response(e)
    return PaymentResponse.model_validate(await services.payments.get(transaction_id))


@router.post("/payments/{transaction_id}/reprovision", response_model=PaymentResponse)
async def reprovision_payment(transaction_id: UUID, services: ServicesDep):
    """Retry provisioning for a completed payment, e.g. after fixing its tier."""
    try:
        await services.payments.reprovision(transaction_id)
    except ProvisioningError as e:
        return provisioning_failed_response(e)
    return PaymentResponse.model_validate(await services.payments.get(transaction_id))


# =============================================================================
# Subscriptions
# =============================================================================

@router.post("/subscriptions/{user_id}/tier", response_model=SubscriptionStatusResponse)
async def change_user_tier(user_id: UUID, request: ChangeTierRequest, services: ServicesDep):
    subscription = await services.subscriptions.change_tier(
        user_id,
        request.tier_id,
        billing_cycle=request.billing_cycle,
        selected_grade_id=request.selected_grade_id,
        selected_subject_ids=request.selected_subject_ids,
    )
    tier = await services.catalog.get_by_id(subscription.tier_id)
    return to_status_response(subscription, tier)


@router.get("/subscriptions/{user_id}/history", response_model=List[SubscriptionStatusResponse])
async def subscription_history(user_id: UUID, services: ServicesDep):
    """All rows of a user, newest first."""
    rows = await services.subscriptions.get_history(user_id)
    return [to_status_response(row, await services.catalog.get_by_id(row.tier_id)) for row in rows]


# =============================================================================
# Referrals
# =============================================================================

@router.post("/referrals/award/{subscription_id}", response_model=AwardLogResponse)
async def award_referral(subscription_id: UUID, services: ServicesDep):
    """Evaluate the referral award for a subscription (backfills)."""
    entry = await services.referral_awards.award_referral_points(subscription_id)
    if entry is None:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "DatabaseError", "message": "Could not record award evaluation"},
        )
    return AwardLogResponse.model_validate(entry)
