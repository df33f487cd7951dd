"""
Health endpoints for operational monitoring. No secrets in responses.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text

from promember.core.container import Services, get_services
from promember.core.database import session_scope

logger = logging.getLogger("promember")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "memberships",
    "rate_limit_counters",
    "rate_limit_logs",
    "error_logs",
    "billing_events",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(services: Services = Depends(get_services)):
    """Readiness check: DB connectivity + required tables."""
    try:
        with session_scope(services.session_factory) as session:
            session.execute(text("SELECT 1"))
            inspector = inspect(session.get_bind())
            missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {
        "status": "ok",
        "billing_enabled": services.billing is not None,
        "webhooks_enabled": services.webhooks is not None,
        "claims_sync_enabled": services.claims is not None,
    }
