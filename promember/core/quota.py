"""
Per-route quota enforcement.

`enforce_quota(name)` is a FastAPI dependency: it admits the caller against
the named limiter, keyed by the authenticated user id when there is one and
by client IP otherwise. Rejections are recorded best-effort in
`rate_limit_logs`; a failed diagnostic write never replaces the 429.
"""
from typing import Callable, Optional

from fastapi import Depends, Request, Response

from promember.core.auth import get_optional_user_id
from promember.core.container import get_services
from promember.core.errors import RateLimitError
from promember.core.logging import get_request_id, log_event


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def enforce_quota(name: str, *, by_ip: bool = False) -> Callable:
    def dependency(
        request: Request,
        response: Response,
        user_id: Optional[str] = Depends(get_optional_user_id),
    ) -> None:
        services = get_services(request)
        ip = client_ip(request)
        if user_id and not by_ip:
            qualifier, kind = user_id, "user"
        else:
            qualifier, kind = ip, "ip"

        try:
            remaining = services.quotas.get(name).admit(qualifier)
        except RateLimitError as e:
            services.rate_limit_log.record_rejection(
                name,
                qualifier,
                qualifier_kind=kind,
                user_id=user_id,
                ip=ip,
                path=request.url.path,
                user_agent=request.headers.get("user-agent"),
            )
            e.request_id = e.request_id or getattr(request.state, "request_id", None) or get_request_id()
            log_event(
                "warning",
                "quota.rejected",
                request_id=e.request_id,
                user_id=user_id,
                error_code=e.code,
                extra={"limiter": name, "qualifier_kind": kind, "retry_after": e.retry_after},
                logger_name="promember.quota",
            )
            raise
        response.headers["X-RateLimit-Remaining"] = str(remaining)

    dependency.__name__ = f"enforce_quota_{name}"
    return dependency
