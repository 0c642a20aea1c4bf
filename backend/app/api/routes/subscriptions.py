"""
Subscription API Routes

Status, usage, cancellation and selection endpoints for the signed-in
user, plus the public tier catalog.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from app.api.dependencies import CurrentUserId, ServicesDep
from app.domain.subscription import (
    CancelRequest,
    PaymentProvider,
    SelectionUpdateRequest,
    SubscriptionStatusResponse,
    TierResponse,
    TokenUsageRequest,
    UsageResponse,
)
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.payments.paypal_service import PayPalService, get_paypal_service
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service


logger = logging.getLogger(__name__)

router = APIRouter()


def to_status_response(
    subscription: UserSubscription,
    tier: SubscriptionTier,
) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        subscription_id=subscription.id,
        tier_id=tier.id,
        tier_name=tier.name,
        tier_display_name=tier.display_name,
        status=subscription.status,
        billing_cycle=subscription.billing_cycle,
        is_recurring=subscription.is_recurring,
        cancel_at_period_end=subscription.cancel_at_period_end,
        period_start_date=subscription.period_start_date,
        period_end_date=subscription.period_end_date,
        subscription_end_date=subscription.subscription_end_date,
        selected_grade_id=subscription.selected_grade_id,
        selected_subject_ids=subscription.selected_subject_ids,
        payment_provider=subscription.payment_provider,
    )


# =============================================================================
# Status & Usage
# =============================================================================

@router.get("/subscriptions/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(user_id: CurrentUserId, services: ServicesDep):
    """
    Current subscription of the user.

    Users seen for the first time get the free tier.
    """
    subscription = await services.subscriptions.ensure_subscription(user_id)
    tier = await services.catalog.get_by_id(subscription.tier_id)
    return to_status_response(subscription, tier)


@router.get("/subscriptions/usage", response_model=UsageResponse)
async def get_usage(user_id: CurrentUserId, services: ServicesDep):
    return await services.subscriptions.get_usage(user_id)


@router.post("/subscriptions/usage", response_model=UsageResponse)
async def record_token_usage(
    request: TokenUsageRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
):
    """Add tokens consumed by the tutor to the current period."""
    return await services.subscriptions.record_token_usage(user_id, request.tokens)


# =============================================================================
# Cancellation
# =============================================================================

@router.post("/subscriptions/cancel", response_model=SubscriptionStatusResponse)
async def cancel_subscription(
    request: CancelRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
    stripe_service: StripeService = Depends(get_stripe_service),
    paypal_service: PayPalService = Depends(get_paypal_service),
):
    """
    Cancel at period end.

    Access continues until the period (monthly) or the paid term (yearly)
    ends; maintenance then moves the user to the free tier. Provider-billed
    plans are stopped at the provider too, and a provider failure undoes
    the local cancellation.
    """
    subscription = await services.subscriptions.cancel_at_period_end(user_id, request.reason)

    provider_id = subscription.provider_subscription_id
    if provider_id and subscription.payment_provider == PaymentProvider.STRIPE.value:
        await stripe_service.cancel_subscription(provider_id)
    elif provider_id and subscription.payment_provider == PaymentProvider.PAYPAL.value:
        await paypal_service.cancel_subscription(provider_id, request.reason or "Cancelled by customer")

    tier = await services.catalog.get_by_id(subscription.tier_id)
    return to_status_response(subscription, tier)


@router.post("/subscriptions/reactivate", response_model=SubscriptionStatusResponse)
async def reactivate_subscription(
    user_id: CurrentUserId,
    services: ServicesDep,
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Undo a pending cancellation.

    PayPal cancellations are final at PayPal, so those plans have to be
    bought again instead.
    """
    current = await services.subscriptions.get_active(user_id)
    if current is not None and current.provider_subscription_id \
            and current.payment_provider == PaymentProvider.PAYPAL.value:
        raise ValidationError("PayPal subscriptions cannot be reactivated, please subscribe again")

    subscription = await services.subscriptions.reactivate(user_id)
    if subscription.provider_subscription_id \
            and subscription.payment_provider == PaymentProvider.STRIPE.value:
        await stripe_service.resume_subscription(subscription.provider_subscription_id)
    tier = await services.catalog.get_by_id(subscription.tier_id)
    return to_status_response(subscription, tier)


# =============================================================================
# Selections
# =============================================================================

@router.put("/subscriptions/selections", response_model=SubscriptionStatusResponse)
async def update_selections(
    request: SelectionUpdateRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
):
    """One-time grade/subject setup for tiers that support it."""
    subscription = await services.subscriptions.update_selections(
        user_id, request.grade_id, request.subject_ids
    )
    tier = await services.catalog.get_by_id(subscription.tier_id)
    return to_status_response(subscription, tier)


# =============================================================================
# Catalog
# =============================================================================

@router.get("/subscriptions/tiers", response_model=List[TierResponse])
async def list_tiers(services: ServicesDep):
    """Active tiers in display order."""
    tiers = await services.catalog.list_active()
    return [TierResponse.model_validate(tier) for tier in tiers]
