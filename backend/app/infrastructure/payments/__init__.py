"""
Payments Infrastructure Module

Provider adapters for Stripe and PayPal.
"""

from app.infrastructure.payments.paypal_service import (
    PayPalService,
    PayPalServiceError,
    get_paypal_service,
)
from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)

__all__ = [
    "PayPalService",
    "PayPalServiceError",
    "get_paypal_service",
    "StripeService",
    "StripeServiceError",
    "get_stripe_service",
]
