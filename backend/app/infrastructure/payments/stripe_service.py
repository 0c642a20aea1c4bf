"""
Stripe Payment Service

Infrastructure adapter for Stripe: hosted checkout for a pending ledger
transaction, provider-side cancellation, and webhook verification.

The checkout session carries the ledger transaction id in its metadata,
which is how checkout.session.completed finds the row to complete.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from stripe import StripeError

from app.config.settings import get_settings
from app.domain.subscription import BillingCycle, PaymentType
from app.infrastructure.db.models.payment import PaymentTransaction
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.exceptions import PaymentProviderError


logger = logging.getLogger(__name__)


class StripeServiceError(PaymentProviderError):
    """Stripe API call or webhook verification failed."""

    def __init__(self, message: str, operation: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider="stripe", operation=operation, original_error=original_error)


def to_minor_units(amount: Decimal) -> int:
    """Stripe amounts are integers in the currency's smallest unit."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class StripeService:
    """Stateless wrapper over the Stripe SDK."""

    def __init__(self):
        settings = get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._frontend_url = settings.frontend_url

        if self._api_key:
            stripe.api_key = self._api_key

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_checkout_session(
        self,
        transaction: PaymentTransaction,
        tier: SubscriptionTier,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> stripe.checkout.Session:
        """
        Hosted checkout for a pending transaction.

        Recurring payments open a Stripe subscription; one-time payments
        a single charge for one billing cycle.
        """
        if not self.is_configured:
            raise StripeServiceError("Stripe is not configured", operation="checkout")

        recurring = transaction.payment_type == PaymentType.RECURRING.value
        interval = "year" if transaction.billing_cycle == BillingCycle.YEARLY.value else "month"

        price_data = {
            "currency": transaction.currency.lower(),
            "unit_amount": to_minor_units(transaction.amount),
            "product_data": {"name": tier.display_name or tier.name},
        }
        if recurring:
            price_data["recurring"] = {"interval": interval}

        metadata = {
            "transaction_id": str(transaction.id),
            "user_id": str(transaction.user_id),
            "tier": tier.name,
            "billing_cycle": transaction.billing_cycle,
        }
        params = {
            "mode": "subscription" if recurring else "payment",
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "client_reference_id": str(transaction.id),
            "success_url": (success_url or f"{self._frontend_url}/billing/success")
            + "?session_id={CHECKOUT_SESSION_ID}",
            "cancel_url": cancel_url or f"{self._frontend_url}/billing/cancelled",
            "metadata": metadata,
        }
        if recurring:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(**params)
        except StripeError as e:
            logger.error(f"Failed to create checkout session for transaction {transaction.id}: {e}")
            raise StripeServiceError(
                f"Failed to create checkout: {e.user_message}",
                operation="checkout",
                original_error=e,
            )

        logger.info(
            f"Created checkout session {session.id} for transaction {transaction.id} "
            f"({tier.name}, {transaction.billing_cycle}, recurring={recurring})"
        )
        return session

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def cancel_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Stop renewal at the end of the paid period."""
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
            )
        except StripeError as e:
            logger.error(f"Failed to cancel Stripe subscription {subscription_id}: {e}")
            raise StripeServiceError(
                f"Failed to cancel: {e.user_message}",
                operation="cancel",
                original_error=e,
            )
        logger.info(f"Stripe subscription {subscription_id} set to cancel at period end")
        return subscription

    async def resume_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Undo a pending cancel_at_period_end."""
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=False,
            )
        except StripeError as e:
            logger.error(f"Failed to resume Stripe subscription {subscription_id}: {e}")
            raise StripeServiceError(
                f"Failed to resume: {e.user_message}",
                operation="resume",
                original_error=e,
            )
        logger.info(f"Stripe subscription {subscription_id} resumed")
        return subscription

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and return the event as plain JSON.

        Raises:
            StripeServiceError: missing secret, bad payload or bad signature.
        """
        if not self._webhook_secret:
            raise StripeServiceError("Stripe webhook secret is not configured", operation="webhook")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            raise StripeServiceError(f"Invalid payload: {e}", operation="webhook", original_error=e)
        except stripe.SignatureVerificationError as e:
            raise StripeServiceError(f"Invalid signature: {e}", operation="webhook", original_error=e)
        return json.loads(payload)


_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance
    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()
    return _stripe_service_instance
