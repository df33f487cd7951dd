"""Daily expiry sweep worker.

Usage:
    python -m promember.workers.expiry_sweep --once
    python -m promember.workers.expiry_sweep --loop

Each run:
- expires Monthly memberships whose cancel_at has passed
- purges processed webhook event ids older than WEBHOOK_EVENT_TTL_DAYS
- retries claim syncs still flagged manual_claim_sync_required

--loop fires daily at EXPIRY_SWEEP_HOUR:EXPIRY_SWEEP_MINUTE in
EXPIRY_SWEEP_TIMEZONE.
"""
from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime
from typing import Dict, Optional

from promember.core.config import settings
from promember.core.container import Services, build_services_from_env
from promember.core.logging import configure_logging
from promember.features.membership.expiry import next_run_at, run_expiry_sweep
from promember.features.membership.models import utc_now

logger = logging.getLogger("promember.workers.expiry")


def run_once(services: Services, now: Optional[datetime] = None) -> Dict:
    now = now or utc_now()
    result: Dict = {"sweep": None, "purged_events": 0, "claims": None}

    if services.claims is None:
        logger.warning("[expiry] claims sync disabled; sweep skipped (CLERK_SECRET_KEY not configured)")
    else:
        result["sweep"] = run_expiry_sweep(services.store, services.claims, services.error_log, now)
        result["claims"] = services.claims.drain_pending()

    result["purged_events"] = services.events.purge(services.settings.WEBHOOK_EVENT_TTL_DAYS, now=now)
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Membership expiry sweep")
    parser.add_argument("--once", action="store_true", help="Run one sweep now and exit")
    parser.add_argument("--loop", action="store_true", help="Run daily at the configured time")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    services = build_services_from_env(settings)

    if args.once:
        print(f"[expiry-worker] {run_once(services)}")
        return

    hour, minute, tz = settings.EXPIRY_SWEEP_HOUR, settings.EXPIRY_SWEEP_MINUTE, settings.EXPIRY_SWEEP_TIMEZONE
    print(f"[expiry-worker] Starting loop (daily at {hour:02d}:{minute:02d} {tz}). CTRL+C to stop.")
    try:
        while True:
            fire_at = next_run_at(utc_now(), hour, minute, tz)
            time.sleep(max(0.0, (fire_at - utc_now()).total_seconds()))
            print(f"[expiry-worker] {run_once(services)}")
    except KeyboardInterrupt:
        print("[expiry-worker] Stopped")


if __name__ == "__main__":
    main()
