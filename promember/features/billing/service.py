"""
Checkout and billing portal entry points.

User-facing: provider failures are captured in the error log with full
detail (bucket `payment`) and surfaced to the caller with a generic message.
Neither call mutates the membership record; the webhook processor does that
once the provider confirms payment.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from promember.core.errors import NotFoundError, UnauthenticatedError, UpstreamProviderError
from promember.features.billing.provider import BillingProvider, BillingProviderError, CheckoutMode
from promember.features.errorlog.service import ErrorBucket, ErrorLogger
from promember.features.membership.models import SubscriptionType
from promember.features.membership.store import MembershipStore

logger = logging.getLogger("promember.billing")

CHECKOUT_FAILED_MESSAGE = "We couldn't start checkout. Please try again in a moment."
PORTAL_FAILED_MESSAGE = "We couldn't open the billing portal. Please try again in a moment."


@dataclass(frozen=True)
class PriceCatalog:
    monthly: Optional[str]
    lifetime: Optional[str]

    @classmethod
    def from_settings(cls, cfg) -> "PriceCatalog":
        return cls(monthly=cfg.STRIPE_PRICE_MONTHLY, lifetime=cfg.STRIPE_PRICE_LIFETIME)

    def price_for(self, sub_type: SubscriptionType) -> Optional[str]:
        return self.lifetime if sub_type == SubscriptionType.LIFETIME else self.monthly


def checkout_plan(tier: Optional[str]) -> tuple[SubscriptionType, CheckoutMode]:
    """Lifetime is a one-time payment; any other tier is the monthly subscription."""
    if SubscriptionType.parse(tier) == SubscriptionType.LIFETIME:
        return SubscriptionType.LIFETIME, CheckoutMode.PAYMENT
    return SubscriptionType.MONTHLY, CheckoutMode.SUBSCRIPTION


class BillingService:
    def __init__(
        self,
        provider: BillingProvider,
        store: MembershipStore,
        error_log: ErrorLogger,
        prices: PriceCatalog,
    ):
        self.provider = provider
        self.store = store
        self.error_log = error_log
        self.prices = prices

    def start_checkout(
        self,
        user_id: Optional[str],
        tier: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a hosted checkout session and return its URL.

        Raises:
            UnauthenticatedError: no caller identity
            UpstreamProviderError: price missing or provider call failed
        """
        if not user_id:
            raise UnauthenticatedError("Authentication required")

        sub_type, mode = checkout_plan(tier)
        price_id = self.prices.price_for(sub_type)
        if not price_id:
            self.error_log.capture(
                "start_checkout",
                f"No price configured for {sub_type.value}",
                bucket=ErrorBucket.PAYMENT,
                human_message=CHECKOUT_FAILED_MESSAGE,
            )
            raise UpstreamProviderError(CHECKOUT_FAILED_MESSAGE)

        record = self.store.get(user_id)
        metadata = {"userId": user_id, "subType": sub_type.value}

        try:
            url = self.provider.create_checkout_session(
                mode=mode,
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                customer_id=record.customer_id if record else None,
                client_reference_id=user_id,
            )
        except BillingProviderError as e:
            self.error_log.capture(
                "start_checkout",
                e,
                bucket=ErrorBucket.PAYMENT,
                human_message=CHECKOUT_FAILED_MESSAGE,
                context={"user_id": user_id, "sub_type": sub_type.value},
            )
            raise UpstreamProviderError(CHECKOUT_FAILED_MESSAGE)

        logger.info(
            "billing.checkout.started",
            extra={"user_id": user_id, "sub_type": sub_type.value, "mode": mode.value},
        )
        return url

    def manage_subscription(self, user_id: Optional[str], return_url: str) -> str:
        """
        Open the provider's self-service portal for the caller.

        Raises:
            UnauthenticatedError: no caller identity
            NotFoundError: caller has no billing customer yet
            UpstreamProviderError: provider call failed
        """
        if not user_id:
            raise UnauthenticatedError("Authentication required")

        record = self.store.get(user_id)
        if record is None or not record.customer_id:
            raise NotFoundError("No billing account found for this user")

        try:
            url = self.provider.create_portal_session(record.customer_id, return_url)
        except BillingProviderError as e:
            self.error_log.capture(
                "manage_subscription",
                e,
                bucket=ErrorBucket.PAYMENT,
                human_message=PORTAL_FAILED_MESSAGE,
                context={"user_id": user_id},
            )
            raise UpstreamProviderError(PORTAL_FAILED_MESSAGE)

        logger.info("billing.portal.opened", extra={"user_id": user_id})
        return url

    def plans(self) -> List[Dict[str, Any]]:
        return [
            {
                "tier": SubscriptionType.MONTHLY.value,
                "mode": CheckoutMode.SUBSCRIPTION.value,
                "available": bool(self.prices.monthly),
            },
            {
                "tier": SubscriptionType.LIFETIME.value,
                "mode": CheckoutMode.PAYMENT.value,
                "available": bool(self.prices.lifetime),
            },
        ]
