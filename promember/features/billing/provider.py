"""
Billing provider protocol.

Defines the interface the membership flows need from a payment provider
(Stripe, or a fake in tests), plus the normalized webhook event type.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from enum import Enum

from promember.core.errors import SignatureInvalidError, UpstreamProviderError


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    OTHER = "other"


STRIPE_EVENT_KINDS = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


class CheckoutMode(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


@dataclass
class WebhookEvent:
    """A verified provider event, reduced to what the processor reads."""
    event_id: str
    event_type: str
    created: int
    object: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> EventKind:
        return STRIPE_EVENT_KINDS.get(self.event_type, EventKind.OTHER)

    @property
    def metadata(self) -> Dict[str, Any]:
        """Metadata attached at checkout time and echoed back by the provider."""
        meta = self.object.get("metadata") or {}
        if meta:
            return dict(meta)
        # Invoices carry the subscription's metadata one level down
        details = self.object.get("subscription_details") or {}
        if not details:
            details = (self.object.get("parent") or {}).get("subscription_details") or {}
        return dict(details.get("metadata") or {})

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId") or None

    @property
    def sub_type(self) -> Optional[str]:
        return self.metadata.get("subType") or None

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.object.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        return customer or None

    @property
    def subscription_id(self) -> Optional[str]:
        """Subscription the event refers to (the object itself for subscription events)."""
        if self.kind in (EventKind.SUBSCRIPTION_UPDATED, EventKind.SUBSCRIPTION_DELETED):
            return self.object.get("id")
        subscription = self.object.get("subscription")
        if subscription is None:
            details = (self.object.get("parent") or {}).get("subscription_details") or {}
            subscription = details.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("id")
        return subscription or None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation
    - Portal session creation
    - Subscription cancellation
    - Webhook signature verification and parsing
    """

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
        """
        Create a hosted checkout session.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        """
        Cancel a recurring subscription immediately.

        Raises:
            BillingProviderError: If cancellation fails
        """
        ...

    def verify_event(self, headers: Dict[str, str], body: bytes) -> WebhookEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(UpstreamProviderError):
    """Payment provider call failed."""
    pass


class BillingWebhookError(SignatureInvalidError):
    """Webhook could not be authenticated or parsed."""
    pass
