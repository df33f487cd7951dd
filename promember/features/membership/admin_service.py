"""
Manual membership edits from the admin surface.

An edit is written with `manual_claim_sync_required=True`; the claims
synchronizer listens for that flag, pushes claims recomputed from the edited
record and clears the flag once the write succeeds.
"""
import logging
from typing import Any, Dict

from promember.core.errors import NotFoundError, ValidationError
from promember.features.membership.models import MembershipRecord, SubscriptionType
from promember.features.membership.store import MembershipStore, plan_conflict

logger = logging.getLogger("promember.membership.admin")

EDITABLE_FIELDS = {"member", "subscription_type", "cancel_at", "admin"}


def apply_manual_edit(store: MembershipStore, user_id: str, changes: Dict[str, Any], *, actor: str) -> MembershipRecord:
    """
    Apply an admin edit to an existing record.

    Raises:
        NotFoundError: no record for `user_id`
        ValidationError: unknown field or subscription type, or an edit that
            would leave `member` disagreeing with the subscription type
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("No changes supplied")

    values = dict(changes)
    if values.get("subscription_type") is not None:
        parsed = SubscriptionType.parse(values["subscription_type"])
        if parsed is None:
            raise ValidationError(f"Unknown subscription type: {values['subscription_type']}")
        values["subscription_type"] = parsed

    for flag in ("member", "admin"):
        if flag in values and values[flag] is None:
            raise ValidationError(f"{flag} cannot be null")

    record = store.get(user_id)
    if record is None:
        raise NotFoundError(f"Membership not found: {user_id}", code="membership_not_found")
    _check_entitlement(record, values)

    # Force a false -> true flip so the reactive sync always fires
    store.merge(user_id, manual_claim_sync_required=False, notify=False)
    record = store.merge(user_id, manual_claim_sync_required=True, **values)

    logger.info(
        "membership.manual_edit",
        extra={"user_id": user_id, "actor": actor, "fields": sorted(values)},
    )
    return store.get(user_id) or record


def _check_entitlement(record: MembershipRecord, values: Dict[str, Any]) -> None:
    if "subscription_type" in values:
        sub_type = values["subscription_type"]
    elif values.get("member") is False:
        sub_type = None
    else:
        sub_type = record.subscription_type

    if "member" in values:
        conflict = plan_conflict(values["member"], sub_type)
        if conflict:
            raise ValidationError(f"Inconsistent edit: {conflict}")