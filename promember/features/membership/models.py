"""
Membership record and authorization claim types.

The record is the durable entitlement state for one user; the claims are the
small map pushed to the identity provider and embedded in session tokens.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class SubscriptionType(str, Enum):
    MONTHLY = "Monthly"
    LIFETIME = "Lifetime"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionType"]:
        """Map a stored/wire value to a type; unknown or empty values mean no subscription."""
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        return None


STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes read back from the store (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def status_for(member: bool) -> str:
    return STATUS_ACTIVE if member else STATUS_INACTIVE


@dataclass
class MembershipRecord:
    """A user's entitlement state."""
    user_id: str
    member: bool = False
    subscription_type: Optional[SubscriptionType] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    cancel_at: Optional[datetime] = None
    cancel_time: Optional[datetime] = None
    resume_time: Optional[datetime] = None
    status: str = STATUS_INACTIVE
    manual_claim_sync_required: bool = False
    admin: bool = False
    last_event_at: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "MembershipRecord":
        data = row._mapping if hasattr(row, "_mapping") else row
        return cls(
            user_id=data["user_id"],
            member=bool(data["member"]),
            subscription_type=SubscriptionType.parse(data["subscription_type"]),
            subscription_id=data["subscription_id"],
            customer_id=data["customer_id"],
            cancel_at=as_utc(data["cancel_at"]),
            cancel_time=as_utc(data["cancel_time"]),
            resume_time=as_utc(data["resume_time"]),
            status=data["status"],
            manual_claim_sync_required=bool(data["manual_claim_sync_required"]),
            admin=bool(data["admin"]),
            last_event_at=data["last_event_at"],
            created_at=as_utc(data["created_at"]),
            updated_at=as_utc(data["updated_at"]),
        )

    @property
    def is_monthly(self) -> bool:
        return self.subscription_type == SubscriptionType.MONTHLY

    @property
    def is_lifetime(self) -> bool:
        return self.subscription_type == SubscriptionType.LIFETIME

    def entitled_at(self, now: datetime) -> bool:
        """Whether the record grants access at `now` (Lifetime, or Monthly without an elapsed cancel_at)."""
        if self.is_lifetime:
            return True
        if self.is_monthly:
            return self.cancel_at is None or self.cancel_at > now
        return False

    def to_summary(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "member": self.member,
            "status": self.status,
            "subscription_type": self.subscription_type.value if self.subscription_type else None,
            "has_subscription": self.subscription_id is not None,
            "has_customer": self.customer_id is not None,
            "cancel_at": self.cancel_at.isoformat() if self.cancel_at else None,
        }


@dataclass(frozen=True)
class AuthorizationClaims:
    """Claim set embedded in identity tokens.

    Equality is over the known fields only; unrelated keys living in the
    identity provider's metadata are never part of the comparison.
    """
    member: bool = False
    pro_status: Optional[SubscriptionType] = None
    expires: Optional[int] = None
    is_admin: bool = False

    # Wire names used in the token
    WIRE_KEYS = ("member", "proStatus", "expires", "isAdmin")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "member": self.member,
            "proStatus": self.pro_status.value if self.pro_status else None,
            "isAdmin": self.is_admin,
        }
        if self.expires is not None:
            payload["expires"] = self.expires
        return payload

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "AuthorizationClaims":
        data = data or {}
        expires = data.get("expires")
        return cls(
            member=bool(data.get("member", False)),
            pro_status=SubscriptionType.parse(data.get("proStatus")),
            expires=int(expires) if expires is not None else None,
            is_admin=bool(data.get("isAdmin", False)),
        )

    @classmethod
    def revoked(cls, is_admin: bool = False) -> "AuthorizationClaims":
        return cls(member=False, pro_status=None, expires=None, is_admin=is_admin)


def desired_claims(record: MembershipRecord) -> AuthorizationClaims:
    """Claims that match a membership record."""
    if not record.member or record.subscription_type is None:
        return AuthorizationClaims.revoked(is_admin=record.admin)

    expires = None
    if record.is_monthly and record.cancel_at is not None:
        expires = int(record.cancel_at.timestamp())

    return AuthorizationClaims(
        member=True,
        pro_status=record.subscription_type,
        expires=expires,
        is_admin=record.admin,
    )
