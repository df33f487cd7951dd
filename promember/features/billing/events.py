"""
Processed webhook event ids.

Stripe delivers at least once, so every event id is claimed here before its
branch runs. A processed id short-circuits redeliveries; a failed (or
abandoned) claim can be taken over by the provider's retry. Rows are purged
after a TTL.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, delete, insert, or_, update
from sqlalchemy.exc import IntegrityError

from promember.core.database import billing_events, session_scope
from promember.features.membership.models import utc_now

logger = logging.getLogger("promember.billing")

# A claim with no result after this long is treated as abandoned
STALE_CLAIM_SECONDS = 300


class ProcessedEventStore:
    def __init__(self, session_factory, time_fn: Callable[[], datetime] = utc_now):
        self._session_factory = session_factory
        self._time_fn = time_fn

    def claim(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        """Return True if the caller now owns processing of `event_id`, False for a duplicate."""
        now = self._time_fn()
        try:
            with session_scope(self._session_factory) as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash,
                        received_at=now,
                        processed=False,
                        attempts=1,
                    )
                )
            return True
        except IntegrityError:
            pass

        stale_before = now - timedelta(seconds=STALE_CLAIM_SECONDS)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(billing_events)
                .where(
                    and_(
                        billing_events.c.stripe_event_id == event_id,
                        billing_events.c.processed.is_(False),
                        or_(
                            billing_events.c.error.is_not(None),
                            billing_events.c.received_at < stale_before,
                        ),
                    )
                )
                .values(
                    error=None,
                    received_at=now,
                    attempts=billing_events.c.attempts + 1,
                )
            )
            reclaimed = result.rowcount == 1

        if reclaimed:
            logger.info("webhook.event.reclaimed", extra={"event_id": event_id})
        return reclaimed

    def mark_processed(self, event_id: str, outcome: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(processed=True, processed_at=self._time_fn(), outcome=outcome, error=None)
            )

    def mark_failed(self, event_id: str, error: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(error=error[:2000] or "error", outcome="failed")
            )

    def purge(self, ttl_days: int, now: Optional[datetime] = None) -> int:
        """Delete processed event ids older than `ttl_days`. Returns rows deleted."""
        cutoff = (now or self._time_fn()) - timedelta(days=ttl_days)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(billing_events).where(
                    and_(billing_events.c.processed.is_(True), billing_events.c.received_at < cutoff)
                )
            )
            return result.rowcount or 0
