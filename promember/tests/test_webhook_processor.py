"""
Webhook event processor: the membership state machine.

Events are signed with the test webhook secret and verified for real; the
payment and identity providers are in-memory fakes.
"""
import time

import pytest
from sqlalchemy import select

from promember.core.database import billing_events, error_logs, session_scope
from promember.core.errors import SignatureInvalidError
from promember.features.billing.webhooks import Outcome, scheduled_cancellation
from promember.features.membership.models import AuthorizationClaims, SubscriptionType

NOW = int(time.time())
PERIOD_END = NOW + 20 * 86400


def checkout_session(user_id, sub_type, *, customer="cus_1", subscription="sub_1"):
    obj = {
        "id": f"cs_{user_id}_{sub_type}",
        "object": "checkout.session",
        "mode": "subscription" if sub_type == "Monthly" else "payment",
        "customer": customer,
        "metadata": {"userId": user_id, "subType": sub_type},
    }
    if sub_type == "Monthly":
        obj["subscription"] = subscription
    return obj


def subscription(sub_id="sub_1", *, user_id="user_1", customer="cus_1", cancel_at_period_end=False,
                 cancel_at=None, period_end=PERIOD_END, metadata=True):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": "active",
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "current_period_end": period_end,
        "metadata": {"userId": user_id, "subType": "Monthly"} if metadata else {},
    }


@pytest.fixture
def deliver(services, signed_webhook):
    def _deliver(event_type, obj, event_id, created=None):
        headers, body = signed_webhook(event_type, obj, event_id=event_id, created=created)
        return services.webhooks.process(headers, body)

    return _deliver


@pytest.fixture
def monthly_member(deliver):
    result = deliver("checkout.session.completed", checkout_session("user_1", "Monthly"), "evt_checkout_monthly")
    assert result.outcome == Outcome.HANDLED
    return result


def _event_row(services, event_id):
    with session_scope(services.session_factory) as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).fetchone()


def _error_rows(services, function_name):
    with session_scope(services.session_factory) as session:
        return session.execute(
            select(error_logs).where(error_logs.c.function_name == function_name)
        ).fetchall()


# -- checkout_completed -----------------------------------------------------

def test_monthly_checkout_activates_membership(services, fake_identity, monthly_member):
    record = services.store.get("user_1")
    assert record.member is True
    assert record.status == "active"
    assert record.subscription_type == SubscriptionType.MONTHLY
    assert record.subscription_id == "sub_1"
    assert record.customer_id == "cus_1"
    assert record.cancel_at is None
    assert record.last_event_at is not None

    assert fake_identity.metadata["user_1"] == {"member": True, "proStatus": "Monthly", "isAdmin": False}
    assert _event_row(services, "evt_checkout_monthly").processed is True


def test_checkout_without_sub_type_uses_session_mode(services, deliver):
    obj = checkout_session("user_9", "Lifetime")
    obj["metadata"] = {"userId": "user_9"}

    deliver("checkout.session.completed", obj, "evt_no_subtype")

    assert services.store.get("user_9").subscription_type == SubscriptionType.LIFETIME


def test_monthly_checkout_after_lifetime_is_ignored(services, deliver):
    deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_life")

    result = deliver("checkout.session.completed", checkout_session("user_1", "Monthly", subscription="sub_9"), "evt_monthly_late")

    assert result.outcome == Outcome.IGNORED
    record = services.store.get("user_1")
    assert record.subscription_type == SubscriptionType.LIFETIME
    assert record.subscription_id is None


# -- Lifetime upgrade -------------------------------------------------------

def test_lifetime_upgrade_end_to_end(services, fake_billing, fake_identity, deliver, monthly_member):
    url = services.billing.start_checkout("user_1", "Lifetime", "https://app/ok", "https://app/cancel")

    assert url.startswith("https://checkout.stripe.test/")
    call = fake_billing.checkout_calls[-1]
    assert call["metadata"] == {"userId": "user_1", "subType": "Lifetime"}
    assert call["price_id"] == "price_lifetime"
    assert call["customer_id"] == "cus_1"

    result = deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_checkout_life")

    assert result.outcome == Outcome.HANDLED
    assert fake_billing.cancelled == ["sub_1"]
    record = services.store.get("user_1")
    assert record.member is True
    assert record.subscription_type == SubscriptionType.LIFETIME
    assert record.subscription_id is None
    assert record.cancel_at is None
    assert fake_identity.metadata["user_1"] == {"member": True, "proStatus": "Lifetime", "isAdmin": False}


def test_lifetime_upgrade_removes_scheduled_cancellation(services, fake_identity, deliver, monthly_member):
    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True), "evt_cancel")
    assert "expires" in fake_identity.metadata["user_1"]

    deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_life")

    record = services.store.get("user_1")
    assert record.cancel_at is None
    assert record.subscription_id is None
    assert "expires" not in fake_identity.metadata["user_1"]
    assert fake_identity.claims_for("user_1").pro_status == SubscriptionType.LIFETIME


def test_lifetime_upgrade_from_nothing_cancels_nothing(services, fake_billing, deliver):
    deliver("checkout.session.completed", checkout_session("user_2", "Lifetime", customer="cus_2"), "evt_life")

    assert fake_billing.cancelled == []
    record = services.store.get("user_2")
    assert record.subscription_type == SubscriptionType.LIFETIME
    assert record.customer_id == "cus_2"


def test_lifetime_upgrade_survives_cancel_failure(services, fake_billing, deliver, monthly_member):
    fake_billing.fail_cancel = True

    result = deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_life")

    assert result.outcome == Outcome.HANDLED
    record = services.store.get("user_1")
    assert record.subscription_type == SubscriptionType.LIFETIME
    assert record.subscription_id is None
    rows = _error_rows(services, "cancel_previous_subscription")
    assert len(rows) == 1
    assert rows[0].bucket == "payment"


def test_old_subscription_events_do_not_demote_lifetime(services, deliver, monthly_member):
    deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_life")

    # Stripe then reports the cancelled monthly subscription
    deleted = deliver("customer.subscription.deleted", subscription(), "evt_old_deleted")
    updated = deliver("customer.subscription.updated", subscription(cancel_at_period_end=True), "evt_old_updated")

    assert deleted.outcome == Outcome.IGNORED
    assert updated.outcome == Outcome.IGNORED
    record = services.store.get("user_1")
    assert record.member is True
    assert record.subscription_type == SubscriptionType.LIFETIME
    assert record.cancel_at is None


# -- subscription_updated ---------------------------------------------------

def test_scheduled_cancellation_sets_cancel_at_and_expires(services, fake_identity, deliver, monthly_member):
    result = deliver("customer.subscription.updated", subscription(cancel_at_period_end=True), "evt_cancel")

    assert result.outcome == Outcome.HANDLED
    record = services.store.get("user_1")
    assert record.member is True
    assert int(record.cancel_at.timestamp()) == PERIOD_END
    assert record.cancel_time is not None
    assert fake_identity.metadata["user_1"]["expires"] == PERIOD_END
    assert fake_identity.metadata["user_1"]["member"] is True


def test_explicit_cancel_at_timestamp_is_used(services, deliver, monthly_member):
    cancel_at = NOW + 5 * 86400
    deliver("customer.subscription.updated", subscription(cancel_at=cancel_at), "evt_cancel_at")

    assert int(services.store.get("user_1").cancel_at.timestamp()) == cancel_at


def test_rescheduled_cancellation_updates_timestamp(services, fake_identity, deliver, monthly_member):
    deliver("customer.subscription.updated", subscription(cancel_at=NOW + 86400), "evt_cancel_1")
    deliver("customer.subscription.updated", subscription(cancel_at=NOW + 3 * 86400), "evt_cancel_2")

    assert int(services.store.get("user_1").cancel_at.timestamp()) == NOW + 3 * 86400
    assert fake_identity.metadata["user_1"]["expires"] == NOW + 3 * 86400


def test_resume_clears_cancel_at_and_expires(services, fake_identity, deliver, monthly_member):
    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True), "evt_cancel")

    result = deliver("customer.subscription.updated", subscription(), "evt_resume")

    assert result.outcome == Outcome.HANDLED
    record = services.store.get("user_1")
    assert record.cancel_at is None
    assert record.resume_time is not None
    assert record.member is True
    assert "expires" not in fake_identity.metadata["user_1"]


def test_renewal_without_cancellation_is_a_noop(services, fake_identity, deliver, monthly_member):
    before = services.store.get("user_1")
    writes_before = list(fake_identity.writes)

    result = deliver("customer.subscription.updated", subscription(), "evt_renewal")

    assert result.outcome == Outcome.NOOP
    assert services.store.get("user_1") == before
    assert fake_identity.writes == writes_before
    assert fake_identity.metadata["user_1"] == {"member": True, "proStatus": "Monthly", "isAdmin": False}


def test_subscription_event_without_metadata_resolves_by_customer(services, deliver, monthly_member):
    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True, metadata=False), "evt_cancel")

    assert services.store.get("user_1").cancel_at is not None


def test_scheduled_cancellation_reads_period_end_from_items():
    obj = {"cancel_at_period_end": True, "cancel_at": None, "items": {"data": [{"current_period_end": PERIOD_END}]}}

    scheduled, cancel_at = scheduled_cancellation(obj)

    assert scheduled is True
    assert int(cancel_at.timestamp()) == PERIOD_END


# -- terminal events --------------------------------------------------------

def test_subscription_deleted_revokes_membership(services, fake_identity, deliver, monthly_member):
    result = deliver("customer.subscription.deleted", subscription(), "evt_deleted")

    assert result.outcome == Outcome.HANDLED
    record = services.store.get("user_1")
    assert record.member is False
    assert record.status == "inactive"
    assert record.subscription_type is None
    assert record.subscription_id is None
    assert record.cancel_at is None
    assert record.customer_id == "cus_1"
    assert fake_identity.claims_for("user_1") == AuthorizationClaims(member=False, pro_status=None)
    assert fake_identity.metadata["user_1"] == {"member": False, "isAdmin": False}


def test_invoice_payment_failed_revokes_membership(services, fake_identity, deliver, monthly_member):
    invoice = {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}

    result = deliver("invoice.payment_failed", invoice, "evt_invoice_failed")

    assert result.outcome == Outcome.HANDLED
    assert result.user_id == "user_1"
    assert services.store.get("user_1").member is False
    assert fake_identity.claims_for("user_1").member is False


def test_invoice_subscription_read_from_parent_details(services, deliver, monthly_member):
    invoice = {
        "id": "in_2",
        "object": "invoice",
        "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_1", "metadata": {"userId": "user_1"}}},
    }

    deliver("invoice.payment_failed", invoice, "evt_invoice_parent")

    assert services.store.get("user_1").member is False


# -- ordering, idempotency, skips --------------------------------------------

def test_events_older_than_watermark_are_dropped(services, deliver):
    deliver("checkout.session.completed", checkout_session("user_1", "Monthly"), "evt_checkout", created=NOW)

    result = deliver(
        "customer.subscription.updated",
        subscription(cancel_at_period_end=True),
        "evt_delayed",
        created=NOW - 600,
    )

    assert result.outcome == Outcome.STALE
    assert services.store.get("user_1").cancel_at is None
    assert services.store.get("user_1").last_event_at == NOW


def test_duplicate_event_is_not_reapplied(services, fake_billing, deliver, monthly_member):
    first = deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_life")
    second = deliver("checkout.session.completed", checkout_session("user_1", "Lifetime"), "evt_life")

    assert first.outcome == Outcome.HANDLED
    assert second.outcome == Outcome.DUPLICATE
    assert fake_billing.cancelled == ["sub_1"]


def test_failed_event_is_reprocessed_on_redelivery(services, signed_webhook, monkeypatch):
    real_merge = services.store.merge
    attempts = {"count": 0}

    def flaky_merge(user_id, **changes):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("database went away")
        return real_merge(user_id, **changes)

    monkeypatch.setattr(services.store, "merge", flaky_merge)
    headers, body = signed_webhook(
        "checkout.session.completed", checkout_session("user_1", "Monthly"), event_id="evt_retry"
    )

    with pytest.raises(RuntimeError):
        services.webhooks.process(headers, body)
    row = _event_row(services, "evt_retry")
    assert row.processed is False
    assert "database went away" in row.error

    result = services.webhooks.process(headers, body)

    assert result.outcome == Outcome.HANDLED
    assert services.store.get("user_1").member is True
    row = _event_row(services, "evt_retry")
    assert row.processed is True
    assert row.attempts == 2
    assert len(_error_rows(services, "process_webhook")) == 1


def test_unrecognized_event_type_is_ignored(services, deliver):
    result = deliver("customer.created", {"id": "cus_1", "object": "customer"}, "evt_customer")

    assert result.outcome == Outcome.IGNORED
    assert _event_row(services, "evt_customer").processed is True


def test_event_without_user_is_skipped(services, deliver):
    obj = {"id": "cs_x", "object": "checkout.session", "mode": "payment", "customer": "cus_unknown", "metadata": {}}

    result = deliver("checkout.session.completed", obj, "evt_orphan")

    assert result.outcome == Outcome.SKIPPED
    assert services.store.get("cus_unknown") is None


def test_subscription_event_for_unknown_record_is_ignored(services, deliver):
    result = deliver("customer.subscription.deleted", subscription(user_id="ghost"), "evt_ghost")

    assert result.outcome == Outcome.IGNORED
    assert services.store.get("ghost") is None


# -- failures ---------------------------------------------------------------

def test_invalid_signature_is_rejected_and_logged_low(services, signed_webhook):
    headers, body = signed_webhook(
        "checkout.session.completed", checkout_session("user_1", "Monthly"), secret="whsec_wrong"
    )

    with pytest.raises(SignatureInvalidError):
        services.webhooks.process(headers, body)

    assert services.store.get("user_1") is None
    rows = _error_rows(services, "verify_webhook")
    assert len(rows) == 1
    assert rows[0].severity == "low"


def test_missing_signature_header_is_rejected(services, signed_webhook):
    _headers, body = signed_webhook("checkout.session.completed", checkout_session("user_1", "Monthly"))

    with pytest.raises(SignatureInvalidError):
        services.webhooks.process({}, body)


def test_tampered_body_is_rejected(services, signed_webhook):
    headers, body = signed_webhook("checkout.session.completed", checkout_session("user_1", "Monthly"))

    with pytest.raises(SignatureInvalidError):
        services.webhooks.process(headers, body.replace(b"user_1", b"user_2"))


def test_claims_failure_keeps_record_and_flags_manual_sync(services, fake_identity, deliver):
    fake_identity.fail_writes = True

    result = deliver("checkout.session.completed", checkout_session("user_1", "Monthly"), "evt_checkout")

    assert result.outcome == Outcome.HANDLED
    record = services.store.get("user_1")
    assert record.member is True
    assert record.manual_claim_sync_required is True
    assert len(_error_rows(services, "sync_claims")) == 1

    fake_identity.fail_writes = False
    assert services.claims.drain_pending() == {"pending": 1, "synced": 1, "failed": 0}
    assert services.store.get("user_1").manual_claim_sync_required is False
    assert fake_identity.claims_for("user_1").pro_status == SubscriptionType.MONTHLY
