"""
Claims synchronizer.

Pushes membership state into the identity provider's claim set. Two entry
points share the same compare-then-write core:

- inline, right after a webhook or sweep mutates a record
- reactively, when `manual_claim_sync_required` flips false -> true on a
  record (manual edits); the flag is reset once the write succeeds
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

from promember.features.claims.identity import IdentityProvider
from promember.features.errorlog.service import ErrorBucket, ErrorLogger
from promember.features.membership.models import (
    AuthorizationClaims,
    MembershipRecord,
    desired_claims,
)
from promember.features.membership.store import MembershipStore

logger = logging.getLogger("promember.claims")


class ClaimsSynchronizer:
    def __init__(self, identity: IdentityProvider, store: MembershipStore, error_log: ErrorLogger):
        self.identity = identity
        self.store = store
        self.error_log = error_log

    def current_claims(self, user_id: str) -> AuthorizationClaims:
        return AuthorizationClaims.from_mapping(self.identity.get_claims(user_id))

    def sync_claims(self, user_id: str, desired: AuthorizationClaims) -> bool:
        """
        Write `desired` unless the identity provider already holds it.

        Returns True when a write happened.

        Raises:
            IdentityProviderError: read or write failed
        """
        current = self.current_claims(user_id)
        if current == desired:
            logger.info("claims.unchanged", extra={"user_id": user_id})
            return False

        self.identity.set_claims(user_id, desired)
        logger.info(
            "claims.updated",
            extra={"user_id": user_id, "claims": desired.to_dict()},
        )
        return True

    def sync_from_record(self, record: MembershipRecord) -> bool:
        return self.sync_claims(record.user_id, desired_claims(record))

    def handle_record_change(self, before: Optional[MembershipRecord], after: MembershipRecord) -> None:
        """Store listener: run a manual sync when the flag is raised."""
        was_flagged = bool(before and before.manual_claim_sync_required)
        if after.manual_claim_sync_required and not was_flagged:
            self.run_manual_sync(after.user_id)

    def run_manual_sync(self, user_id: str) -> bool:
        """Recompute claims from the current record and clear the flag. Returns True on success."""
        record = self.store.get(user_id)
        if record is None:
            return False
        try:
            self.sync_from_record(record)
        except Exception as e:
            self.error_log.capture(
                "manual_claim_sync",
                e,
                bucket=ErrorBucket.GENERIC,
                context={"user_id": user_id},
            )
            return False

        self.store.merge(user_id, manual_claim_sync_required=False, notify=False)
        return True

    def drain_pending(self, limit: int = 100) -> Dict[str, int]:
        """Retry every record still flagged for a manual sync."""
        results = {"pending": 0, "synced": 0, "failed": 0}
        for record in self.store.list_pending_claim_syncs(limit=limit):
            results["pending"] += 1
            if self.run_manual_sync(record.user_id):
                results["synced"] += 1
            else:
                results["failed"] += 1
        return results
