"""
Deduplicating error log.

Captures errors from every component into `error_logs`. Identical
(function_name, message) pairs inside the dedupe window collapse into one
entry whose `occurrences` counter is incremented; the window is anchored at
the entry's `first_seen`, so a recurring error starts a new entry once the
window has passed.

`capture` never raises and never blocks the caller on its own failure: a
failure to write is reported to the process logger only.
"""
from __future__ import annotations

import hashlib
import logging
import traceback
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy import and_, func, insert, select, update

from promember.core.database import error_logs, session_scope
from promember.features.membership.models import utc_now

logger = logging.getLogger("promember.errorlog")

DEFAULT_DEDUPE_WINDOW_SECONDS = 3600
MAX_MESSAGE_CHARS = 2000
MAX_STACK_CHARS = 8000


class ErrorBucket(str, Enum):
    PAYMENT = "payment"
    GENERIC = "generic"


class Severity(str, Enum):
    LOW = "low"
    ERROR = "error"
    CRITICAL = "critical"


def dedupe_key(function_name: str, message: str) -> str:
    return hashlib.sha256(f"{function_name}\x00{message}".encode("utf-8")).hexdigest()


def _describe(error: Union[BaseException, str]) -> tuple[str, Optional[str]]:
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return message[:MAX_MESSAGE_CHARS], stack[:MAX_STACK_CHARS]
    return str(error)[:MAX_MESSAGE_CHARS], None


class ErrorLogger:
    def __init__(
        self,
        session_factory,
        dedupe_window_seconds: int = DEFAULT_DEDUPE_WINDOW_SECONDS,
        time_fn: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.dedupe_window = timedelta(seconds=dedupe_window_seconds)
        self._time_fn = time_fn

    def capture(
        self,
        function_name: str,
        error: Union[BaseException, str],
        *,
        severity: Severity = Severity.ERROR,
        bucket: ErrorBucket = ErrorBucket.GENERIC,
        human_message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Record an error. Returns the entry id, or None when the write failed."""
        try:
            message, stack = _describe(error)
            severity = Severity(severity)
            bucket = ErrorBucket(bucket)
            level = logging.WARNING if severity == Severity.LOW else logging.ERROR
            logger.log(
                level,
                "error.captured",
                extra={"function_name": function_name, "error_message": message, "bucket": bucket.value},
            )
            return self._upsert(function_name, message, stack, severity, bucket, human_message, context)
        except Exception:
            logger.exception("error.capture.failed", extra={"function_name": function_name})
            return None

    def _upsert(self, function_name, message, stack, severity, bucket, human_message, context) -> int:
        now = self._time_fn()
        key = dedupe_key(function_name, message)
        window_start = now - self.dedupe_window

        with session_scope(self._session_factory) as session:
            existing = session.execute(
                select(error_logs.c.id)
                .where(and_(error_logs.c.dedupe_key == key, error_logs.c.first_seen > window_start))
                .order_by(error_logs.c.first_seen.desc())
                .limit(1)
            ).fetchone()

            if existing:
                session.execute(
                    update(error_logs)
                    .where(error_logs.c.id == existing.id)
                    .values(occurrences=error_logs.c.occurrences + 1, last_seen=now)
                )
                return existing.id

            result = session.execute(
                insert(error_logs).values(
                    dedupe_key=key,
                    function_name=function_name,
                    message=message,
                    stack=stack,
                    severity=severity.value,
                    bucket=bucket.value,
                    human_message=human_message,
                    context=context,
                    occurrences=1,
                    first_seen=now,
                    last_seen=now,
                )
            )
            return result.inserted_primary_key[0]

    def summary(self) -> Dict[str, Any]:
        """Entry and occurrence counts grouped by bucket and severity."""
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(
                    error_logs.c.bucket,
                    error_logs.c.severity,
                    func.count(),
                    func.coalesce(func.sum(error_logs.c.occurrences), 0),
                ).group_by(error_logs.c.bucket, error_logs.c.severity)
            ).fetchall()

        by_bucket: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        entries = 0
        occurrences = 0
        for bucket, severity, count, total in rows:
            entries += count
            occurrences += int(total)
            by_bucket[bucket] = by_bucket.get(bucket, 0) + int(total)
            by_severity[severity] = by_severity.get(severity, 0) + int(total)

        return {
            "entries": entries,
            "occurrences": occurrences,
            "by_bucket": by_bucket,
            "by_severity": by_severity,
        }
