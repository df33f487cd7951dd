"""
Membership store.

One row per user in `memberships`. Every mutation goes through `merge`, a
single-transaction upsert that also enforces the record invariants:

- `member` is true only while the record holds a subscription type; revoking
  membership drops the plan, and changing the plan alone sets `member` to match
- `status` always mirrors `member`
- `cancel_at` only exists on Monthly records
- only Monthly records carry a `subscription_id`
- `customer_id` is set once and never cleared or replaced

An elapsed `cancel_at` is the one time-dependent part of entitlement; the
expiry sweep demotes those records through `expire_if_elapsed`.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from promember.core.database import memberships, session_scope
from promember.features.membership.models import (
    MembershipRecord,
    SubscriptionType,
    as_utc,
    status_for,
    utc_now,
)

logger = logging.getLogger("promember.membership")

ChangeListener = Callable[[Optional[MembershipRecord], MembershipRecord], None]
Guard = Callable[[Optional[MembershipRecord]], bool]

MERGE_FIELDS = {
    "member",
    "subscription_type",
    "subscription_id",
    "customer_id",
    "cancel_at",
    "cancel_time",
    "resume_time",
    "manual_claim_sync_required",
    "admin",
    "last_event_at",
}

EXPIRED_CHANGES = {
    "member": False,
    "subscription_type": None,
    "subscription_id": None,
    "cancel_at": None,
}


def plan_conflict(member: bool, sub_type: Optional[SubscriptionType]) -> Optional[str]:
    """Why `member` cannot go with `sub_type`, or None when they agree."""
    if member and sub_type is None:
        return "member requires a subscription type"
    if not member and sub_type is not None:
        return f"{sub_type.value} records are always members"
    return None


class MembershipStore:
    def __init__(self, session_factory, time_fn: Callable[[], datetime] = utc_now):
        self._session_factory = session_factory
        self._time_fn = time_fn
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked with (before, after) after each committed merge."""
        self._listeners.append(listener)

    def get(self, user_id: str) -> Optional[MembershipRecord]:
        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(memberships).where(memberships.c.user_id == user_id)
            ).fetchone()
            return MembershipRecord.from_row(row) if row else None

    def find_by_customer(self, customer_id: str) -> Optional[MembershipRecord]:
        if not customer_id:
            return None
        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(memberships).where(memberships.c.customer_id == customer_id)
            ).fetchone()
            return MembershipRecord.from_row(row) if row else None

    def merge(self, user_id: str, *, notify: bool = True, **changes: Any) -> MembershipRecord:
        """
        Apply `changes` to the user's record in one write, creating it if needed.

        Returns the record as stored. Listeners are notified after commit
        unless `notify` is False.
        """
        unknown = set(changes) - MERGE_FIELDS
        if unknown:
            raise ValueError(f"Unknown membership fields: {', '.join(sorted(unknown))}")

        # A concurrent first write for the same user loses the insert race
        # once; the retry sees the row and updates it.
        for attempt in range(2):
            try:
                before, after = self._merge_once(user_id, changes)
                break
            except IntegrityError:
                if attempt:
                    raise
                logger.info("membership.merge.retry", extra={"user_id": user_id})

        if notify:
            self._notify(before, after)
        return after

    def expire_if_elapsed(self, user_id: str, now: datetime) -> Optional[MembershipRecord]:
        """
        Demote a Monthly record whose `cancel_at` is at or before `now`.

        The predicate is re-checked on the locked row, so a Lifetime upgrade
        or a resume committed after the sweep listed its candidates wins.
        Returns the expired record, or None when the row no longer qualifies.
        """
        now = as_utc(now)

        def elapsed(record: Optional[MembershipRecord]) -> bool:
            return (
                record is not None
                and record.is_monthly
                and record.cancel_at is not None
                and record.cancel_at <= now
            )

        before, after = self._merge_once(user_id, EXPIRED_CHANGES, guard=elapsed)
        if after is None:
            logger.info("membership.expiry.skipped", extra={"user_id": user_id})
            return None

        self._notify(before, after)
        return after

    def _merge_once(self, user_id: str, changes: Dict[str, Any], guard: Optional[Guard] = None):
        now = self._time_fn()
        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(memberships).where(memberships.c.user_id == user_id).with_for_update()
            ).fetchone()
            before = MembershipRecord.from_row(row) if row else None
            if guard is not None and not guard(before):
                return before, None
            values = self._normalize(user_id, before, changes)

            if before is None:
                session.execute(
                    insert(memberships).values(user_id=user_id, created_at=now, updated_at=now, **values)
                )
            else:
                session.execute(
                    update(memberships)
                    .where(memberships.c.user_id == user_id)
                    .values(updated_at=now, **values)
                )

            stored = session.execute(
                select(memberships).where(memberships.c.user_id == user_id)
            ).fetchone()
            return before, MembershipRecord.from_row(stored)

    def _normalize(self, user_id: str, before: Optional[MembershipRecord], changes: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(changes)

        if "customer_id" in values and before is not None and before.customer_id:
            incoming = values.pop("customer_id")
            if incoming and incoming != before.customer_id:
                logger.warning(
                    "membership.customer_id.immutable",
                    extra={"user_id": user_id, "stored": before.customer_id, "incoming": incoming},
                )

        member_given = "member" in values
        if member_given and not values["member"] and "subscription_type" not in values:
            values["subscription_type"] = None

        type_given = "subscription_type" in values
        if type_given:
            values["subscription_type"] = SubscriptionType.parse(values["subscription_type"])
        sub_type = values.get("subscription_type", before.subscription_type if before else None)

        if sub_type != SubscriptionType.MONTHLY:
            values["cancel_at"] = None
            values["subscription_id"] = None

        if member_given:
            conflict = plan_conflict(bool(values["member"]), sub_type)
            if conflict:
                raise ValueError(f"{conflict} (user {user_id})")
        if member_given or type_given:
            member = sub_type is not None
        else:
            member = before.member if before else False
        values["member"] = member
        values["status"] = status_for(member)

        if "subscription_type" in values:
            values["subscription_type"] = sub_type.value if sub_type else None
        for key in ("cancel_at", "cancel_time", "resume_time"):
            if key in values:
                values[key] = as_utc(values[key])
        return values

    def _notify(self, before: Optional[MembershipRecord], after: MembershipRecord) -> None:
        for listener in self._listeners:
            try:
                listener(before, after)
            except Exception:
                logger.exception("membership.listener.failed", extra={"user_id": after.user_id})

    def list_expired(self, now: datetime, limit: Optional[int] = None) -> List[MembershipRecord]:
        """Monthly records whose scheduled cancellation has elapsed."""
        stmt = (
            select(memberships)
            .where(
                and_(
                    memberships.c.subscription_type == SubscriptionType.MONTHLY.value,
                    memberships.c.cancel_at.is_not(None),
                    memberships.c.cancel_at <= as_utc(now),
                )
            )
            .order_by(memberships.c.cancel_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        with session_scope(self._session_factory) as session:
            return [MembershipRecord.from_row(row) for row in session.execute(stmt).fetchall()]

    def list_pending_claim_syncs(self, limit: int = 100) -> List[MembershipRecord]:
        stmt = (
            select(memberships)
            .where(memberships.c.manual_claim_sync_required.is_(True))
            .order_by(memberships.c.updated_at)
            .limit(limit)
        )
        with session_scope(self._session_factory) as session:
            return [MembershipRecord.from_row(row) for row in session.execute(stmt).fetchall()]

    def stats(self) -> Dict[str, int]:
        """Member counts; admins are excluded from every member count."""
        not_admin = memberships.c.admin.is_(False)
        active = and_(memberships.c.member.is_(True), not_admin)

        def _count(session, *criteria) -> int:
            return session.execute(
                select(func.count()).select_from(memberships).where(*criteria)
            ).scalar() or 0

        with session_scope(self._session_factory) as session:
            return {
                "total_members": _count(session, active),
                "monthly_members": _count(
                    session, active, memberships.c.subscription_type == SubscriptionType.MONTHLY.value
                ),
                "lifetime_members": _count(
                    session, active, memberships.c.subscription_type == SubscriptionType.LIFETIME.value
                ),
                "admin_users": _count(session, memberships.c.admin.is_(True)),
                "records": _count(session),
            }
