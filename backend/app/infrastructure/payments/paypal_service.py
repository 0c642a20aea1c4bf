"""
PayPal Payment Service

REST client for the two PayPal calls the backend makes itself:
webhook signature verification and billing subscription cancellation.
Orders and captures happen in the browser through PayPal's JS SDK.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from app.config.settings import get_settings
from app.infrastructure.exceptions import PaymentProviderError


logger = logging.getLogger(__name__)


# Headers PayPal signs every webhook delivery with
TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}


class PayPalServiceError(PaymentProviderError):
    """PayPal API call or webhook verification failed."""

    def __init__(self, message: str, operation: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider="paypal", operation=operation, original_error=original_error)


class PayPalService:
    """Thin async client over the PayPal REST API."""

    def __init__(self):
        settings = get_settings()
        self._client_id = settings.paypal_client_id
        self._client_secret = settings.paypal_client_secret
        self._webhook_id = settings.paypal_webhook_id
        self._api_base = settings.paypal_api_base.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if not self.is_configured:
            raise PayPalServiceError("PayPal credentials are not configured", operation="oauth")
        response = await client.post(
            f"{self._api_base}/v1/oauth2/token",
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        return response.json()["access_token"]

    async def verify_webhook_signature(
        self,
        headers: Mapping[str, str],
        event: Dict[str, Any],
    ) -> bool:
        """
        Ask PayPal whether a webhook delivery is genuine.

        Raises:
            PayPalServiceError: webhook id missing or PayPal unreachable.
        """
        if not self._webhook_id:
            raise PayPalServiceError("PAYPAL_WEBHOOK_ID is not configured", operation="webhook")

        body = {key: headers.get(header, "") for key, header in TRANSMISSION_HEADERS.items()}
        body["webhook_id"] = self._webhook_id
        body["webhook_event"] = event

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                token = await self._get_access_token(client)
                response = await client.post(
                    f"{self._api_base}/v1/notifications/verify-webhook-signature",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()
                verified = response.json().get("verification_status") == "SUCCESS"
        except httpx.HTTPError as e:
            logger.error(f"PayPal webhook verification request failed: {e}")
            raise PayPalServiceError(
                "Could not verify webhook with PayPal",
                operation="webhook",
                original_error=e,
            )

        if not verified:
            logger.warning(f"PayPal rejected signature for event {event.get('id')}")
        return verified

    async def cancel_subscription(
        self,
        subscription_id: str,
        reason: str = "Cancelled by customer",
    ) -> None:
        """Cancel a PayPal billing subscription."""
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                token = await self._get_access_token(client)
                response = await client.post(
                    f"{self._api_base}/v1/billing/subscriptions/{subscription_id}/cancel",
                    json={"reason": reason[:127]},
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"PayPal cancel for {subscription_id} returned HTTP {e.response.status_code}"
            )
            raise PayPalServiceError(
                f"Failed to cancel PayPal subscription {subscription_id}",
                operation="cancel",
                original_error=e,
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal cancel for {subscription_id} failed: {e}")
            raise PayPalServiceError(
                f"Failed to cancel PayPal subscription {subscription_id}",
                operation="cancel",
                original_error=e,
            )
        logger.info(f"Cancelled PayPal subscription {subscription_id}")


_paypal_service_instance: Optional[PayPalService] = None


def get_paypal_service() -> PayPalService:
    """Get or create PayPal service singleton."""
    global _paypal_service_instance
    if _paypal_service_instance is None:
        _paypal_service_instance = PayPalService()
    return _paypal_service_instance
