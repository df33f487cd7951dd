"""Caller-facing membership routes."""
from fastapi import APIRouter, Depends

from promember.core.auth import get_current_user_id
from promember.core.container import Services, get_services
from promember.core.errors import UpstreamProviderError
from promember.core.quota import enforce_quota
from promember.features.claims.identity import IdentityProviderError
from promember.features.errorlog.service import ErrorBucket
from promember.features.membership.models import MembershipRecord, desired_claims

router = APIRouter(prefix="/membership", tags=["membership"])

CLAIMS_REFRESH_FAILED_MESSAGE = "We couldn't refresh your membership. Please try again in a moment."


@router.get("", dependencies=[Depends(enforce_quota("member_read"))])
def get_membership(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """The caller's membership record and the claims it implies."""
    record = services.store.get(user_id) or MembershipRecord(user_id=user_id)
    return {
        "membership": record.to_summary(),
        "claims": desired_claims(record).to_dict(),
    }


@router.post("/claims/refresh", dependencies=[Depends(enforce_quota("member_read"))])
def refresh_claims(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """
    Push claims recomputed from the record to the identity provider.

    Claims only reach the caller's session on its next token refresh, so
    the response tells the client to force one.
    """
    record = services.store.get(user_id) or MembershipRecord(user_id=user_id)
    updated = False
    if services.claims is not None:
        try:
            updated = services.claims.sync_from_record(record)
        except IdentityProviderError as e:
            services.error_log.capture(
                "refresh_claims",
                e,
                bucket=ErrorBucket.GENERIC,
                human_message=CLAIMS_REFRESH_FAILED_MESSAGE,
                context={"user_id": user_id},
            )
            raise UpstreamProviderError(CLAIMS_REFRESH_FAILED_MESSAGE)

    return {
        "claims": desired_claims(record).to_dict(),
        "updated": updated,
        "refresh_token": True,
    }
