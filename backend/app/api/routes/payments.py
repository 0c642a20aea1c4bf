"""
Payment Routes

Opens ledger transactions for the signed-in user:
- stripe: pending row plus a hosted checkout session
- paypal: pending row keyed by the PayPal order id from the JS SDK
- manual: pending row with the mobile-money receipt, approved by an operator
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status

from app.api.dependencies import CurrentUserId, ServicesDep
from app.domain.payment import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentResponse,
)
from app.domain.subscription import PaymentProvider
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/payments",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    request: CreatePaymentRequest,
    user_id: CurrentUserId,
    services: ServicesDep,
    stripe_service: StripeService = Depends(get_stripe_service),
):
    if request.payment_provider in (PaymentProvider.PAYPAL, PaymentProvider.MANUAL) \
            and not request.external_transaction_id:
        raise ValidationError(
            f"{request.payment_provider.value} payments need external_transaction_id"
        )

    transaction = await services.payments.create_pending(user_id, request)

    if request.payment_provider != PaymentProvider.STRIPE:
        return CreatePaymentResponse(transaction=PaymentResponse.model_validate(transaction))

    tier = await services.catalog.get_by_id(transaction.tier_id)
    session = await stripe_service.create_checkout_session(
        transaction,
        tier,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    transaction = await services.payments.attach_external_reference(transaction, session.id)
    return CreatePaymentResponse(
        transaction=PaymentResponse.model_validate(transaction),
        checkout_url=session.url,
        checkout_session_id=session.id,
    )


@router.get("/payments", response_model=List[PaymentResponse])
async def list_payments(user_id: CurrentUserId, services: ServicesDep):
    """Payment history, newest first."""
    transactions = await services.payments.list_for_user(user_id)
    return [PaymentResponse.model_validate(t) for t in transactions]
