"""Best-effort diagnostics for quota rejections."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, insert, select

from promember.core.database import rate_limit_logs, session_scope
from promember.features.membership.models import utc_now

logger = logging.getLogger("promember.quota")


class RateLimitDiagnostics:
    def __init__(self, session_factory, time_fn: Callable[[], datetime] = utc_now):
        self._session_factory = session_factory
        self._time_fn = time_fn

    def record_rejection(
        self,
        limiter_name: str,
        qualifier: str,
        *,
        qualifier_kind: str,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        path: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Write one rejection row. Never raises; returns False when the write failed."""
        try:
            with session_scope(self._session_factory) as session:
                session.execute(
                    insert(rate_limit_logs).values(
                        limiter_name=limiter_name,
                        qualifier=qualifier,
                        qualifier_kind=qualifier_kind,
                        user_id=user_id,
                        ip=ip,
                        path=(path or "")[:500] or None,
                        user_agent=user_agent,
                        created_at=self._time_fn(),
                    )
                )
            return True
        except Exception:
            logger.warning(
                "quota.diagnostic.failed",
                exc_info=True,
                extra={"limiter": limiter_name, "qualifier": qualifier},
            )
            return False

    def summary(self) -> Dict[str, Any]:
        """Rejection totals per limiter and distinct callers."""
        with session_scope(self._session_factory) as session:
            per_limiter = session.execute(
                select(rate_limit_logs.c.limiter_name, func.count()).group_by(rate_limit_logs.c.limiter_name)
            ).fetchall()
            unique_ips = session.execute(
                select(func.count(func.distinct(rate_limit_logs.c.ip))).where(rate_limit_logs.c.ip.is_not(None))
            ).scalar() or 0
            unique_users = session.execute(
                select(func.count(func.distinct(rate_limit_logs.c.user_id))).where(rate_limit_logs.c.user_id.is_not(None))
            ).scalar() or 0

        by_limiter = {name: count for name, count in per_limiter}
        return {
            "total": sum(by_limiter.values()),
            "by_limiter": by_limiter,
            "unique_ips": unique_ips,
            "unique_users": unique_users,
        }
