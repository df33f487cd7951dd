"""Claims repair worker.

Retries claim syncs for records flagged manual_claim_sync_required (a claim
write failed after the record write, or a manual edit was never pushed).

Usage:
    python -m promember.workers.claims_sync --once
    python -m promember.workers.claims_sync --loop --sleep 60
"""
from __future__ import annotations

import argparse
import time

from promember.core.config import settings
from promember.core.container import build_services_from_env
from promember.core.logging import configure_logging

DEFAULT_LOOP_SECONDS = 60


def main() -> None:
    parser = argparse.ArgumentParser(description="Claims repair worker")
    parser.add_argument("--once", action="store_true", help="Drain flagged records once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=100, help="Batch size per iteration")
    parser.add_argument("--sleep", type=int, default=DEFAULT_LOOP_SECONDS, help="Seconds between loops")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    services = build_services_from_env(settings)
    if services.claims is None:
        print("[claims-worker] CLERK_SECRET_KEY not configured. Exiting.")
        return

    if args.once:
        print(f"[claims-worker] {services.claims.drain_pending(limit=args.limit)}")
        return

    print(f"[claims-worker] Starting loop (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop.")
    try:
        while True:
            result = services.claims.drain_pending(limit=args.limit)
            if result["pending"]:
                print(f"[claims-worker] {result}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[claims-worker] Stopped")


if __name__ == "__main__":
    main()
