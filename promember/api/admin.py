"""
Admin routes.

All routes require admin auth (Clerk admin role or legacy X-Admin-Key).
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from promember.core.admin_auth import AdminActor, require_admin
from promember.core.container import Services, get_services
from promember.features.membership.admin_service import apply_manual_edit
from promember.features.membership.models import desired_claims

router = APIRouter(prefix="/admin", tags=["admin"])


class MembershipEdit(BaseModel):
    member: Optional[bool] = None
    subscription_type: Optional[str] = None
    cancel_at: Optional[datetime] = None
    admin: Optional[bool] = None


@router.patch("/memberships/{user_id}")
def edit_membership(
    user_id: str,
    body: MembershipEdit,
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """
    Manually edit a membership.

    Claims are resynced from the edited record; when that sync fails the
    record stays flagged and the claims worker retries it.
    """
    record = apply_manual_edit(
        services.store,
        user_id,
        body.model_dump(exclude_unset=True),
        actor=actor.actor_id,
    )
    return {
        "membership": record.to_summary(),
        "claims": desired_claims(record).to_dict(),
        "manual_claim_sync_required": record.manual_claim_sync_required,
    }


@router.get("/memberships/stats")
def membership_stats(
    _actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Member counts; admin users are excluded from member totals."""
    return services.store.stats()


@router.get("/error-logs/summary")
def error_log_summary(
    _actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.error_log.summary()


@router.get("/rate-limit-logs/summary")
def rate_limit_log_summary(
    _actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.rate_limit_log.summary()
