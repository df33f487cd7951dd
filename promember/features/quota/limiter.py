"""
Sliding-window quota limiter backed by a persisted counter row.

Each (limiter name, qualifier) pair owns one row in `rate_limit_counters`
holding the timestamps of admitted calls inside the trailing window. The
serving tier is stateless, so admission is a read-filter-write transaction:

1. read the row and its `version`
2. drop timestamps older than `now - period_seconds`
3. full window: persist the pruned list and reject
   otherwise: append `now` and persist
4. the write only lands if `version` is unchanged (or, for a new row, if
   nobody inserted it first); a lost race retries from step 1

Two concurrent admits for one qualifier can never both take the last slot.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from promember.core.database import rate_limit_counters, session_scope
from promember.core.errors import ConflictError, RateLimitError

logger = logging.getLogger("promember.quota")

MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class QuotaConfig:
    name: str
    max_calls: int
    period_seconds: int


@dataclass
class Admission:
    allowed: bool
    remaining: int
    retry_after: int


class _WriteConflict(Exception):
    """Another writer changed the counter between our read and write."""


class QuotaLimiter:
    def __init__(
        self,
        config: QuotaConfig,
        session_factory,
        time_fn: Callable[[], float] = time.time,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        if config.max_calls <= 0 or config.period_seconds <= 0:
            raise ValueError(f"Invalid quota for {config.name}: {config.max_calls}/{config.period_seconds}s")
        self.config = config
        self._session_factory = session_factory
        self._time_fn = time_fn
        self._max_attempts = max_attempts

    @property
    def name(self) -> str:
        return self.config.name

    def admit(self, qualifier: str) -> int:
        """
        Admit one call for `qualifier`.

        Returns the remaining budget in the current window.

        Raises:
            RateLimitError: window is full
            ConflictError: the counter stayed contended across every retry
        """
        result = self.check(qualifier)
        if not result.allowed:
            raise RateLimitError(
                f"Rate limit exceeded for {self.name}",
                retry_after=result.retry_after,
            )
        return result.remaining

    def check(self, qualifier: str) -> Admission:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._attempt(qualifier)
            except _WriteConflict:
                logger.info(
                    "quota.conflict.retry",
                    extra={"limiter": self.name, "qualifier": qualifier, "attempt": attempt},
                )
        raise ConflictError(f"Quota counter for {self.name} is contended; try again")

    def _attempt(self, qualifier: str) -> Admission:
        now = float(self._time_fn())
        window_start = now - self.config.period_seconds

        with session_scope(self._session_factory) as session:
            row = self._load_counter(session, qualifier)
            stored: List[float] = list(row.calls) if row is not None else []
            calls = sorted(float(ts) for ts in stored if float(ts) > window_start)

            allowed = len(calls) < self.config.max_calls
            if allowed:
                calls.append(now)

            if row is None:
                self._insert_counter(session, qualifier, calls, now)
            elif allowed or calls != stored:
                self._update_counter(session, qualifier, calls, row.version, now)

        remaining = max(0, self.config.max_calls - len(calls))
        retry_after = 0
        if not allowed and calls:
            retry_after = max(1, math.ceil(calls[0] + self.config.period_seconds - now))
        return Admission(allowed=allowed, remaining=remaining, retry_after=retry_after)

    def _load_counter(self, session, qualifier: str):
        return session.execute(
            select(rate_limit_counters.c.calls, rate_limit_counters.c.version).where(
                and_(
                    rate_limit_counters.c.limiter_name == self.name,
                    rate_limit_counters.c.qualifier == qualifier,
                )
            )
        ).fetchone()

    def _insert_counter(self, session, qualifier: str, calls: List[float], now: float) -> None:
        # The failed insert aborts the transaction; session_scope rolls it back.
        try:
            session.execute(
                insert(rate_limit_counters).values(
                    limiter_name=self.name,
                    qualifier=qualifier,
                    calls=calls,
                    version=1,
                    updated_at=datetime.fromtimestamp(now, timezone.utc),
                )
            )
        except IntegrityError:
            raise _WriteConflict()

    def _update_counter(self, session, qualifier: str, calls: List[float], version: int, now: float) -> None:
        result = session.execute(
            update(rate_limit_counters)
            .where(
                and_(
                    rate_limit_counters.c.limiter_name == self.name,
                    rate_limit_counters.c.qualifier == qualifier,
                    rate_limit_counters.c.version == version,
                )
            )
            .values(calls=calls, version=version + 1, updated_at=datetime.fromtimestamp(now, timezone.utc))
        )
        if result.rowcount != 1:
            raise _WriteConflict()


class QuotaRegistry:
    """Independently configured limiters, looked up by call-site name."""

    def __init__(self, limiters: Optional[Dict[str, QuotaLimiter]] = None):
        self._limiters: Dict[str, QuotaLimiter] = dict(limiters or {})

    @classmethod
    def from_configs(cls, configs, session_factory, time_fn: Callable[[], float] = time.time) -> "QuotaRegistry":
        return cls({c.name: QuotaLimiter(c, session_factory, time_fn=time_fn) for c in configs})

    def get(self, name: str) -> QuotaLimiter:
        try:
            return self._limiters[name]
        except KeyError:
            raise KeyError(f"No quota limiter configured for '{name}'")

    def names(self) -> List[str]:
        return sorted(self._limiters)


def build_quota_configs(cfg) -> List[QuotaConfig]:
    """
    Per-call-site quotas from settings. Budgets are never shared between names.

    `public_read`, `member_read` and `billing_write` gate this app's routes
    through `enforce_quota`. No route here admits against `activity_log`: the
    activity-event batcher lives in the client tier, and the service that
    receives its batches calls `QuotaRegistry.get("activity_log").admit(user_id)`.
    """
    return [
        QuotaConfig("public_read", cfg.QUOTA_PUBLIC_READ_MAX_CALLS, cfg.QUOTA_PUBLIC_READ_PERIOD_SECONDS),
        QuotaConfig("member_read", cfg.QUOTA_MEMBER_READ_MAX_CALLS, cfg.QUOTA_MEMBER_READ_PERIOD_SECONDS),
        QuotaConfig("activity_log", cfg.QUOTA_ACTIVITY_LOG_MAX_CALLS, cfg.QUOTA_ACTIVITY_LOG_PERIOD_SECONDS),
        QuotaConfig("billing_write", cfg.QUOTA_BILLING_WRITE_MAX_CALLS, cfg.QUOTA_BILLING_WRITE_PERIOD_SECONDS),
    ]
