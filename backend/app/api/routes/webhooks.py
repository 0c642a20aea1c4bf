"""
Payment Provider Webhooks

Stripe and PayPal deliveries feed the payment ledger. Every delivery is
verified, then de-duplicated by event id in processed_webhook_events
within the same transaction as its ledger changes.

Outcomes:
- success: ledger updated, event recorded
- provisioning_failed: transaction kept completed with
  provisioning_status=failed for an operator to reprovision
- ignored: event refers to something we cannot act on (unknown
  transaction, already-failed row); recorded so it is not retried
- any other error: 500 and rollback, so the provider retries
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status

from app.api.dependencies import ServicesDep
from app.domain.subscription import PaymentProvider
from app.infrastructure.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from app.infrastructure.payments.paypal_service import PayPalServiceError, get_paypal_service
from app.infrastructure.payments.stripe_service import StripeServiceError, get_stripe_service
from app.infrastructure.services.container import LifecycleServices


logger = logging.getLogger(__name__)

router = APIRouter()

Handler = Callable[[LifecycleServices, Dict[str, Any]], Awaitable[None]]


async def process_event(
    services: LifecycleServices,
    provider: PaymentProvider,
    event_id: str,
    event_type: str,
    resource: Dict[str, Any],
    handler: Optional[Handler],
) -> Dict[str, str]:
    if await services.webhook_events.is_processed(event_id):
        logger.info(f"{provider.value} event {event_id} already processed, skipping")
        return {"status": "already_processed"}

    outcome = "success"
    if handler is None:
        logger.debug(f"Unhandled {provider.value} event type: {event_type}")
        outcome = "unhandled"
    else:
        logger.info(f"Processing {provider.value} event {event_type} ({event_id})")
        try:
            await handler(services, resource)
        except ProvisioningError as e:
            logger.error(f"Provisioning failed for {provider.value} event {event_id}: {e.message}")
            outcome = "provisioning_failed"
        except (NotFoundError, InvalidTransitionError, ValidationError) as e:
            logger.warning(f"Ignoring {provider.value} event {event_id} ({event_type}): {e.message}")
            outcome = "ignored"

    await services.webhook_events.mark_processed(event_id, event_type, provider.value)
    return {"status": outcome}


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


# =============================================================================
# Stripe
# =============================================================================

@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, services: ServicesDep):
    """
    Stripe events.

    checkout.session.completed completes the transaction named in the
    session metadata; subscription_cycle invoices are renewals.
    """
    stripe_service = get_stripe_service()

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature",
        )

    try:
        event = stripe_service.verify_webhook_signature(payload, signature)
    except StripeServiceError as e:
        logger.error(f"Stripe webhook verification failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )

    event_type = event.get("type")
    return await process_event(
        services,
        PaymentProvider.STRIPE,
        event.get("id"),
        event_type,
        event.get("data", {}).get("object", {}),
        STRIPE_HANDLERS.get(event_type),
    )


def _stripe_transaction_id(obj: Dict[str, Any]) -> Optional[UUID]:
    metadata = obj.get("metadata") or {}
    return _parse_uuid(metadata.get("transaction_id") or obj.get("client_reference_id"))


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    # Newer API versions moved the subscription under parent.subscription_details
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


async def handle_stripe_checkout_completed(services: LifecycleServices, session: Dict[str, Any]):
    transaction_id = _stripe_transaction_id(session)
    if transaction_id is None:
        logger.error(f"Checkout session {session.get('id')} has no transaction_id")
        return
    if session.get("payment_status") not in ("paid", "no_payment_required"):
        logger.info(f"Checkout session {session.get('id')} completed but not paid yet")
        return

    await services.payments.complete(
        transaction_id,
        external_transaction_id=session.get("payment_intent") or session.get("id"),
        provider_subscription_id=session.get("subscription"),
        payload={
            "checkout_session_id": session.get("id"),
            "customer": session.get("customer"),
            "payment_intent": session.get("payment_intent"),
        },
    )


async def handle_stripe_checkout_expired(services: LifecycleServices, session: Dict[str, Any]):
    transaction_id = _stripe_transaction_id(session)
    if transaction_id is None:
        return
    await services.payments.fail(transaction_id, "Checkout session expired")


async def handle_stripe_payment_failed(services: LifecycleServices, intent: Dict[str, Any]):
    transaction_id = _stripe_transaction_id(intent)
    if transaction_id is None:
        logger.debug(f"Payment intent {intent.get('id')} is not linked to a transaction")
        return
    error = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    await services.payments.fail(transaction_id, error)


async def handle_stripe_invoice_paid(services: LifecycleServices, invoice: Dict[str, Any]):
    if invoice.get("billing_reason") != "subscription_cycle":
        # The first invoice is covered by checkout.session.completed
        return
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return
    amount_paid = invoice.get("amount_paid")
    await services.payments.record_renewal(
        PaymentProvider.STRIPE,
        subscription_id,
        invoice["id"],
        amount=Decimal(amount_paid) / 100 if amount_paid is not None else None,
        payload={"invoice_id": invoice["id"], "customer": invoice.get("customer")},
    )


async def handle_stripe_subscription_deleted(services: LifecycleServices, subscription: Dict[str, Any]):
    await services.subscriptions.cancel_by_provider_subscription(
        subscription["id"], "Subscription ended at Stripe"
    )


STRIPE_HANDLERS: Dict[str, Handler] = {
    "checkout.session.completed": handle_stripe_checkout_completed,
    "checkout.session.expired": handle_stripe_checkout_expired,
    "payment_intent.payment_failed": handle_stripe_payment_failed,
    "invoice.payment_succeeded": handle_stripe_invoice_paid,
    "customer.subscription.deleted": handle_stripe_subscription_deleted,
}


# =============================================================================
# PayPal
# =============================================================================

@router.post("/webhooks/paypal")
async def paypal_webhook(request: Request, services: ServicesDep):
    """
    PayPal events.

    Orders are created in the browser; the pending transaction carries the
    PayPal order id (one-time) or billing subscription id (recurring).
    """
    paypal_service = get_paypal_service()

    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )

    try:
        verified = await paypal_service.verify_webhook_signature(request.headers, event)
    except PayPalServiceError as e:
        logger.error(f"PayPal webhook verification failed: {e.message}")
        verified = False
    if not verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )

    event_type = event.get("event_type")
    return await process_event(
        services,
        PaymentProvider.PAYPAL,
        event.get("id"),
        event_type,
        event.get("resource") or {},
        PAYPAL_HANDLERS.get(event_type),
    )


async def _find_paypal_transaction(services: LifecycleServices, resource: Dict[str, Any]):
    transaction_id = _parse_uuid(resource.get("custom_id"))
    if transaction_id is not None:
        return await services.payments.get(transaction_id)

    order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
    if order_id:
        transaction = await services.payments.find_by_external_id(PaymentProvider.PAYPAL, order_id)
        if transaction is not None:
            return transaction
    logger.warning(f"No transaction for PayPal resource {resource.get('id')} (order {order_id})")
    return None


async def handle_paypal_capture_completed(services: LifecycleServices, capture: Dict[str, Any]):
    transaction = await _find_paypal_transaction(services, capture)
    if transaction is None:
        return
    amount = capture.get("amount") or {}
    await services.payments.complete(
        transaction.id,
        payload={
            "paypal_capture_id": capture.get("id"),
            "capture_status": capture.get("status"),
            "amount": amount.get("value"),
            "currency": amount.get("currency_code"),
        },
    )


async def handle_paypal_capture_failed(services: LifecycleServices, capture: Dict[str, Any]):
    transaction = await _find_paypal_transaction(services, capture)
    if transaction is None:
        return
    await services.payments.fail(transaction.id, f"PayPal capture {capture.get('status', 'denied').lower()}")


async def handle_paypal_subscription_activated(services: LifecycleServices, subscription: Dict[str, Any]):
    subscription_id = subscription.get("id")
    transaction = await services.payments.find_by_external_id(PaymentProvider.PAYPAL, subscription_id)
    if transaction is None:
        transaction_id = _parse_uuid(subscription.get("custom_id"))
        if transaction_id is None:
            logger.warning(f"No transaction for PayPal subscription {subscription_id}")
            return
        transaction = await services.payments.get(transaction_id)
    await services.payments.complete(
        transaction.id,
        provider_subscription_id=subscription_id,
        payload={
            "paypal_plan_id": subscription.get("plan_id"),
            "subscription_status": subscription.get("status"),
            "start_time": subscription.get("start_time"),
        },
    )


async def handle_paypal_sale_completed(services: LifecycleServices, sale: Dict[str, Any]):
    subscription_id = sale.get("billing_agreement_id")
    if not subscription_id:
        return
    amount = (sale.get("amount") or {}).get("total")
    await services.payments.record_renewal(
        PaymentProvider.PAYPAL,
        subscription_id,
        sale["id"],
        amount=Decimal(amount) if amount is not None else None,
        payload={"paypal_sale_id": sale["id"], "sale_state": sale.get("state")},
    )


async def handle_paypal_subscription_cancelled(services: LifecycleServices, subscription: Dict[str, Any]):
    await services.subscriptions.cancel_by_provider_subscription(
        subscription["id"],
        subscription.get("status_update_reason") or "Cancelled at PayPal",
    )


PAYPAL_HANDLERS: Dict[str, Handler] = {
    "PAYMENT.CAPTURE.COMPLETED": handle_paypal_capture_completed,
    "PAYMENT.CAPTURE.DENIED": handle_paypal_capture_failed,
    "PAYMENT.CAPTURE.DECLINED": handle_paypal_capture_failed,
    "BILLING.SUBSCRIPTION.ACTIVATED": handle_paypal_subscription_activated,
    "PAYMENT.SALE.COMPLETED": handle_paypal_sale_completed,
    "BILLING.SUBSCRIPTION.CANCELLED": handle_paypal_subscription_cancelled,
}
