"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with an explicitly constructed
`stripe.StripeClient` owned by the provider instance (no module-level API
key). Outbound calls are bounded by a timeout and never retried here: the
webhook path relies on Stripe's own redelivery, and user-facing calls fail
visibly.
"""
import json
from typing import Dict, Any, Optional

import stripe

from promember.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CheckoutMode,
    WebhookEvent,
)

SIGNATURE_HEADER = "stripe-signature"


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        webhook_tolerance_seconds: int = 300,
        client: Optional[stripe.StripeClient] = None,
    ):
        if not secret_key and client is None:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self._client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=0,
        )

    def create_checkout_session(
        self,
        *,
        mode: CheckoutMode,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        client_reference_id: Optional[str] = None,
    ) -> str:
        """Create Stripe checkout session."""
        params: Dict[str, Any] = {
            "mode": CheckoutMode(mode).value,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
        }
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        if customer_id:
            params["customer"] = customer_id
        elif mode == CheckoutMode.PAYMENT:
            # One-time payments only create a customer when asked to
            params["customer_creation"] = "always"
        if mode == CheckoutMode.SUBSCRIPTION:
            # Subscription events echo the subscription's metadata, not the session's
            params["subscription_data"] = {"metadata": dict(metadata)}

        try:
            session = self._client.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        if not session.url:
            raise BillingProviderError("Stripe checkout session has no URL")
        return session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = self._client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a Stripe subscription immediately."""
        try:
            self._client.subscriptions.cancel(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")

    def verify_event(self, headers: Dict[str, str], body: bytes) -> WebhookEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = _header(headers, SIGNATURE_HEADER)
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.webhook_tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        return parse_event(event)


def _header(headers: Dict[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def parse_event(event: Dict[str, Any]) -> WebhookEvent:
    """Parse a Stripe event payload into a WebhookEvent."""
    if not isinstance(event, dict) or "id" not in event or "type" not in event:
        raise BillingWebhookError("Invalid payload: missing event id or type")
    data = event.get("data") or {}
    return WebhookEvent(
        event_id=event["id"],
        event_type=event["type"],
        created=int(event.get("created") or 0),
        object=data.get("object") or {},
    )
