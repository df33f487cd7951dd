"""
Webhook event processor.

Turns verified Stripe events into membership transitions:

    None -> Monthly -> CancelScheduled -> (expired by the sweep) | Monthly (resumed)
    {None, Monthly} -> Lifetime        (no downgrade path)

Order of work for every delivery:
1. Verify the signature (nothing runs before this)
2. Claim the event id (duplicates short-circuit)
3. Resolve the user (metadata userId, else the record owning the customer)
4. Drop events older than the record's `last_event_at` watermark
5. Dispatch on event kind; each mutating branch is one merge write
6. Sync claims; a failure flags the record for a later manual sync

Claims are eventually consistent with the record: a claim write failure
never rolls back the record write.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from promember.core.errors import SignatureInvalidError
from promember.features.billing.events import ProcessedEventStore
from promember.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    EventKind,
    WebhookEvent,
)
from promember.features.claims.service import ClaimsSynchronizer
from promember.features.errorlog.service import ErrorBucket, ErrorLogger, Severity
from promember.features.membership.models import (
    MembershipRecord,
    SubscriptionType,
    as_utc,
    utc_now,
)
from promember.features.membership.store import MembershipStore

logger = logging.getLogger("promember.billing.webhooks")


class Outcome(str, Enum):
    HANDLED = "handled"
    NOOP = "noop"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: Outcome
    user_id: Optional[str] = None


def _epoch_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def scheduled_cancellation(subscription: Dict[str, Any]) -> tuple[bool, Optional[datetime]]:
    """
    Read the scheduled-cancellation state of a subscription object.

    Returns (scheduled, cancel_at). `cancel_at` falls back to the period end
    when only `cancel_at_period_end` is set.
    """
    cancel_at = subscription.get("cancel_at")
    period_end_flag = bool(subscription.get("cancel_at_period_end"))
    scheduled = period_end_flag or cancel_at is not None

    if cancel_at is None and period_end_flag:
        cancel_at = subscription.get("current_period_end")
        if cancel_at is None:
            # Newer API versions keep the period on the subscription items
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                cancel_at = items[0].get("current_period_end")

    return scheduled, _epoch_to_datetime(cancel_at)


def _same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return a is b
    return int(as_utc(a).timestamp()) == int(as_utc(b).timestamp())


class WebhookProcessor:
    def __init__(
        self,
        provider: BillingProvider,
        store: MembershipStore,
        claims: ClaimsSynchronizer,
        error_log: ErrorLogger,
        events: ProcessedEventStore,
        time_fn: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.store = store
        self.claims = claims
        self.error_log = error_log
        self.events = events
        self._time_fn = time_fn

    def process(self, headers: Dict[str, str], body: bytes) -> WebhookResult:
        """
        Verify and apply one webhook delivery.

        Raises:
            SignatureInvalidError: authenticity check failed (HTTP 400)
            Exception: unexpected failure while applying the event (HTTP 500,
                the provider redelivers)
        """
        try:
            event = self.provider.verify_event(headers, body)
        except SignatureInvalidError as e:
            self.error_log.capture(
                "verify_webhook",
                e,
                severity=Severity.LOW,
                bucket=ErrorBucket.PAYMENT,
            )
            raise

        payload_hash = hashlib.sha256(body).hexdigest()
        if not self.events.claim(event.event_id, event.event_type, payload_hash):
            logger.info(
                "webhook.duplicate",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return WebhookResult(event.event_id, event.event_type, Outcome.DUPLICATE)

        try:
            result = self._apply(event)
        except Exception as e:
            self.events.mark_failed(event.event_id, str(e) or e.__class__.__name__)
            self.error_log.capture(
                "process_webhook",
                e,
                severity=Severity.CRITICAL,
                bucket=ErrorBucket.PAYMENT,
                context={"event_id": event.event_id, "event_type": event.event_type},
            )
            raise

        self.events.mark_processed(event.event_id, result.outcome.value)
        logger.info(
            "webhook.processed",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "outcome": result.outcome.value,
                "user_id": result.user_id,
            },
        )
        return result

    def _apply(self, event: WebhookEvent) -> WebhookResult:
        if event.kind == EventKind.OTHER:
            logger.info("webhook.unhandled_type", extra={"event_type": event.event_type})
            return WebhookResult(event.event_id, event.event_type, Outcome.IGNORED)

        user_id, record = self._resolve_user(event)
        if user_id is None:
            logger.warning(
                "webhook.user_unresolved",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return WebhookResult(event.event_id, event.event_type, Outcome.SKIPPED)

        if record is not None and record.last_event_at is not None and event.created < record.last_event_at:
            logger.info(
                "webhook.stale",
                extra={
                    "event_id": event.event_id,
                    "user_id": user_id,
                    "event_created": event.created,
                    "watermark": record.last_event_at,
                },
            )
            return WebhookResult(event.event_id, event.event_type, Outcome.STALE, user_id)

        if event.kind == EventKind.CHECKOUT_COMPLETED:
            outcome = self._on_checkout_completed(event, user_id, record)
        elif event.kind == EventKind.SUBSCRIPTION_UPDATED:
            outcome = self._on_subscription_updated(event, user_id, record)
        else:
            outcome = self._on_subscription_ended(event, user_id, record)
        return WebhookResult(event.event_id, event.event_type, outcome, user_id)

    def _resolve_user(self, event: WebhookEvent) -> tuple[Optional[str], Optional[MembershipRecord]]:
        if event.user_id:
            return event.user_id, self.store.get(event.user_id)
        record = self.store.find_by_customer(event.customer_id) if event.customer_id else None
        if record is None:
            return None, None
        return record.user_id, record

    def _watermark(self, event: WebhookEvent, record: Optional[MembershipRecord]) -> int:
        if record is not None and record.last_event_at is not None:
            return max(record.last_event_at, event.created)
        return event.created

    # -- transitions -------------------------------------------------------

    def _on_checkout_completed(
        self, event: WebhookEvent, user_id: str, record: Optional[MembershipRecord]
    ) -> Outcome:
        sub_type = SubscriptionType.parse(event.sub_type)
        if sub_type is None:
            sub_type = SubscriptionType.LIFETIME if event.object.get("mode") == "payment" else SubscriptionType.MONTHLY

        if sub_type == SubscriptionType.LIFETIME:
            return self._upgrade_to_lifetime(event, user_id, record)

        if record is not None and record.is_lifetime:
            logger.warning(
                "webhook.checkout.monthly_after_lifetime",
                extra={"user_id": user_id, "event_id": event.event_id},
            )
            return Outcome.IGNORED

        after = self.store.merge(
            user_id,
            member=True,
            subscription_type=SubscriptionType.MONTHLY,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            cancel_at=None,
            last_event_at=self._watermark(event, record),
        )
        self._sync_claims(after)
        return Outcome.HANDLED

    def _upgrade_to_lifetime(
        self, event: WebhookEvent, user_id: str, record: Optional[MembershipRecord]
    ) -> Outcome:
        previous_subscription = record.subscription_id if record else None
        if previous_subscription:
            try:
                self.provider.cancel_subscription(previous_subscription)
                logger.info(
                    "webhook.lifetime.previous_subscription_cancelled",
                    extra={"user_id": user_id, "subscription_id": previous_subscription},
                )
            except BillingProviderError as e:
                self.error_log.capture(
                    "cancel_previous_subscription",
                    e,
                    bucket=ErrorBucket.PAYMENT,
                    context={"user_id": user_id, "subscription_id": previous_subscription},
                )

        after = self.store.merge(
            user_id,
            member=True,
            subscription_type=SubscriptionType.LIFETIME,
            subscription_id=None,
            cancel_at=None,
            customer_id=event.customer_id,
            last_event_at=self._watermark(event, record),
        )
        self._sync_claims(after)
        return Outcome.HANDLED

    def _on_subscription_updated(
        self, event: WebhookEvent, user_id: str, record: Optional[MembershipRecord]
    ) -> Outcome:
        if not self._is_current_subscription(event, record):
            return Outcome.IGNORED

        scheduled, cancel_at = scheduled_cancellation(event.object)
        now = self._time_fn()

        if scheduled:
            if cancel_at is None:
                logger.warning(
                    "webhook.subscription.cancel_without_timestamp",
                    extra={"user_id": user_id, "subscription_id": event.subscription_id},
                )
                return Outcome.IGNORED
            if _same_instant(record.cancel_at, cancel_at):
                return Outcome.NOOP
            changes = {"cancel_at": cancel_at}
            if record.cancel_at is None:
                changes["cancel_time"] = now
            after = self.store.merge(user_id, last_event_at=self._watermark(event, record), **changes)
            logger.info(
                "webhook.subscription.cancel_scheduled",
                extra={"user_id": user_id, "cancel_at": cancel_at.isoformat()},
            )
        elif record.cancel_at is not None:
            after = self.store.merge(
                user_id,
                cancel_at=None,
                resume_time=now,
                last_event_at=self._watermark(event, record),
            )
            logger.info("webhook.subscription.resumed", extra={"user_id": user_id})
        else:
            # Renewal or metadata change: nothing to apply
            return Outcome.NOOP

        self._sync_claims(after)
        return Outcome.HANDLED

    def _on_subscription_ended(
        self, event: WebhookEvent, user_id: str, record: Optional[MembershipRecord]
    ) -> Outcome:
        if not self._is_current_subscription(event, record):
            return Outcome.IGNORED

        after = self.store.merge(
            user_id,
            member=False,
            subscription_type=None,
            subscription_id=None,
            cancel_at=None,
            last_event_at=self._watermark(event, record),
        )
        logger.info(
            "webhook.subscription.ended",
            extra={"user_id": user_id, "event_type": event.event_type},
        )
        self._sync_claims(after)
        return Outcome.HANDLED

    def _is_current_subscription(self, event: WebhookEvent, record: Optional[MembershipRecord]) -> bool:
        """Subscription events apply only to the subscription the record currently holds."""
        subscription_id = event.subscription_id
        if record is None or not record.subscription_id or subscription_id != record.subscription_id:
            logger.info(
                "webhook.subscription.not_current",
                extra={
                    "event_id": event.event_id,
                    "subscription_id": subscription_id,
                    "user_id": record.user_id if record else None,
                },
            )
            return False
        return True

    def _sync_claims(self, record: MembershipRecord) -> None:
        try:
            self.claims.sync_from_record(record)
        except Exception as e:
            self.error_log.capture(
                "sync_claims",
                e,
                bucket=ErrorBucket.GENERIC,
                context={"user_id": record.user_id},
            )
            self.store.merge(record.user_id, manual_claim_sync_required=True, notify=False)
