"""
Billing API routes.

- POST /api/billing/checkout: Create a checkout session (Monthly or Lifetime)
- POST /api/billing/portal: Open the self-service billing portal
- POST /api/billing/webhook: Receive Stripe webhooks
- GET  /api/billing/plans: Public list of tiers
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from promember.core.auth import get_current_user_id
from promember.core.container import Services, get_services, require_billing, require_webhooks
from promember.core.errors import InternalError, SignatureInvalidError
from promember.core.logging import log_event
from promember.core.quota import enforce_quota

logger = logging.getLogger("promember.api.billing")

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create a checkout session."""
    tier: str = "Monthly"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


class WebhookResponse(BaseModel):
    received: bool
    outcome: str


def _frontend_url(services: Services, path: str) -> str:
    return f"{services.settings.FRONTEND_URL.rstrip('/')}{path}"


@router.post(
    "/checkout",
    response_model=UrlResponse,
    dependencies=[Depends(enforce_quota("billing_write"))],
)
def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(require_billing),
):
    """
    Create a Stripe checkout session.

    Errors:
        401: Not authenticated
        429: billing_write quota exhausted
        502: Stripe error (generic message; detail goes to the error log)
        503: Billing disabled
    """
    url = services.billing.start_checkout(
        user_id,
        body.tier,
        success_url=body.success_url or _frontend_url(services, "/membership?checkout=success"),
        cancel_url=body.cancel_url or _frontend_url(services, "/membership?checkout=cancelled"),
    )
    return {"url": url}


@router.post(
    "/portal",
    response_model=UrlResponse,
    dependencies=[Depends(enforce_quota("billing_write"))],
)
def create_portal(
    body: PortalRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(require_billing),
):
    """
    Create a Stripe billing portal session.

    Errors:
        404: No customer on record (user never checked out)
        502: Stripe error
    """
    url = services.billing.manage_subscription(
        user_id,
        return_url=body.return_url or _frontend_url(services, "/membership"),
    )
    return {"url": url}


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, services: Services = Depends(require_webhooks)):
    """
    Handle Stripe webhook events.

    200 for handled, ignored or duplicate events; 400 when the signature does
    not verify; 500 when a recognized event fails (Stripe redelivers).
    Responses never carry error detail.
    """
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(services.webhooks.process, headers, body)
    except SignatureInvalidError:
        log_event("warning", "webhook.signature_invalid", error_code="signature_invalid", logger_name=logger.name)
        raise SignatureInvalidError("Invalid webhook signature")
    except Exception as e:
        log_event(
            "error",
            "webhook.failed",
            error_code="internal_error",
            extra={"error_type": e.__class__.__name__},
            logger_name=logger.name,
        )
        raise InternalError("Webhook processing failed")

    return {"received": True, "outcome": result.outcome.value}


@router.get("/plans", dependencies=[Depends(enforce_quota("public_read", by_ip=True))])
def list_plans(services: Services = Depends(get_services)) -> Dict[str, List[Dict[str, Any]]]:
    if services.billing is None:
        return {"plans": []}
    return {"plans": services.billing.plans()}
