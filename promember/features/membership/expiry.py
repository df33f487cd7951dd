"""
Daily expiry sweep.

Monthly records whose scheduled cancellation has elapsed lose their
entitlement here; the provider never sends a second event for that moment.
Running the sweep twice is a no-op: the first pass clears `cancel_at`, so
the query no longer matches.
"""
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from promember.features.claims.service import ClaimsSynchronizer
from promember.features.errorlog.service import ErrorBucket, ErrorLogger
from promember.features.membership.models import AuthorizationClaims, as_utc, utc_now
from promember.features.membership.store import MembershipStore

logger = logging.getLogger("promember.expiry")


def run_expiry_sweep(
    store: MembershipStore,
    claims: ClaimsSynchronizer,
    error_log: ErrorLogger,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    now = as_utc(now) if now else utc_now()
    candidates = store.list_expired(now)
    results = {"candidates": len(candidates), "expired": 0, "skipped": 0, "failed": 0}

    for record in candidates:
        try:
            expired = store.expire_if_elapsed(record.user_id, now)
        except Exception as e:
            results["failed"] += 1
            error_log.capture(
                "expiry_sweep",
                e,
                bucket=ErrorBucket.GENERIC,
                context={"user_id": record.user_id},
            )
            continue

        if expired is None:
            # Upgraded or resumed after the candidate query
            results["skipped"] += 1
            continue

        results["expired"] += 1
        try:
            claims.sync_claims(record.user_id, AuthorizationClaims.revoked(is_admin=expired.admin))
        except Exception as e:
            results["failed"] += 1
            error_log.capture(
                "expiry_sweep_claims",
                e,
                bucket=ErrorBucket.GENERIC,
                context={"user_id": record.user_id},
            )
            store.merge(record.user_id, manual_claim_sync_required=True, notify=False)

    logger.info("[expiry] sweep complete", extra=results)
    return results


def next_run_at(now: datetime, hour: int = 0, minute: int = 0, tz: str = "America/Los_Angeles") -> datetime:
    """Next daily fire time strictly after `now`, as an aware UTC datetime."""
    zone = ZoneInfo(tz)
    local_now = as_utc(now).astimezone(zone)
    candidate = datetime.combine(local_now.date(), time(hour, minute), tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time(hour, minute), tzinfo=zone)
    return as_utc(candidate)
