"""Checkout and portal entry points."""
import pytest
from sqlalchemy import select

from promember.core.database import error_logs, session_scope
from promember.core.errors import NotFoundError, UnauthenticatedError, UpstreamProviderError
from promember.features.billing.provider import CheckoutMode
from promember.features.billing.service import (
    CHECKOUT_FAILED_MESSAGE,
    BillingService,
    PriceCatalog,
    checkout_plan,
)
from promember.features.membership.models import SubscriptionType


def _payment_errors(session_factory):
    with session_scope(session_factory) as session:
        return session.execute(select(error_logs).where(error_logs.c.bucket == "payment")).fetchall()


def test_checkout_plan_maps_tiers():
    assert checkout_plan("Lifetime") == (SubscriptionType.LIFETIME, CheckoutMode.PAYMENT)
    assert checkout_plan("Monthly") == (SubscriptionType.MONTHLY, CheckoutMode.SUBSCRIPTION)
    assert checkout_plan(None) == (SubscriptionType.MONTHLY, CheckoutMode.SUBSCRIPTION)


def test_monthly_checkout_passes_user_metadata(services, fake_billing):
    url = services.billing.start_checkout("user_1", "Monthly", "https://app/ok", "https://app/no")

    assert url == "https://checkout.stripe.test/session/1"
    call = fake_billing.checkout_calls[0]
    assert call["mode"] == CheckoutMode.SUBSCRIPTION
    assert call["price_id"] == "price_monthly"
    assert call["metadata"] == {"userId": "user_1", "subType": "Monthly"}
    assert call["client_reference_id"] == "user_1"
    assert call["customer_id"] is None
    assert services.store.get("user_1") is None


def test_checkout_reuses_existing_customer(services, fake_billing):
    services.store.merge("user_1", customer_id="cus_1")

    services.billing.start_checkout("user_1", "Lifetime", "https://app/ok", "https://app/no")

    assert fake_billing.checkout_calls[0]["customer_id"] == "cus_1"
    assert fake_billing.checkout_calls[0]["mode"] == CheckoutMode.PAYMENT


def test_checkout_requires_user(services):
    with pytest.raises(UnauthenticatedError):
        services.billing.start_checkout(None, "Monthly", "https://app/ok", "https://app/no")


def test_provider_failure_is_logged_and_surfaced_generically(services, fake_billing, session_factory):
    fake_billing.fail_checkout = True

    with pytest.raises(UpstreamProviderError) as exc:
        services.billing.start_checkout("user_1", "Monthly", "https://app/ok", "https://app/no")

    assert exc.value.message == CHECKOUT_FAILED_MESSAGE
    assert "card_declined" not in exc.value.message
    rows = _payment_errors(session_factory)
    assert len(rows) == 1
    assert "card_declined" in rows[0].message
    assert rows[0].function_name == "start_checkout"


def test_missing_price_is_an_upstream_error(services, fake_billing, session_factory):
    billing = BillingService(fake_billing, services.store, services.error_log, PriceCatalog(monthly="price_m", lifetime=None))

    with pytest.raises(UpstreamProviderError):
        billing.start_checkout("user_1", "Lifetime", "https://app/ok", "https://app/no")

    assert fake_billing.checkout_calls == []
    assert len(_payment_errors(session_factory)) == 1


def test_portal_requires_billing_customer(services, fake_billing):
    with pytest.raises(NotFoundError):
        services.billing.manage_subscription("user_1", "https://app/account")

    services.store.merge("user_1", member=True, subscription_type="Monthly", customer_id="cus_1")
    url = services.billing.manage_subscription("user_1", "https://app/account")

    assert url == "https://billing.stripe.test/portal/cus_1"
    assert fake_billing.portal_calls == [{"customer_id": "cus_1", "return_url": "https://app/account"}]


def test_plans_report_availability(services, fake_billing):
    billing = BillingService(fake_billing, services.store, services.error_log, PriceCatalog(monthly="price_m", lifetime=None))

    assert billing.plans() == [
        {"tier": "Monthly", "mode": "subscription", "available": True},
        {"tier": "Lifetime", "mode": "payment", "available": False},
    ]
