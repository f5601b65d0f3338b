from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Final, TypeVar

import anyio
import httpx
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTENT_STORE_MAX_ATTEMPTS: Final[int] = 3
CONTENT_STORE_BASE_DELAY: Final[float] = 0.1
METADATA_STORE_MAX_ATTEMPTS: Final[int] = 4
METADATA_STORE_BASE_DELAY: Final[float] = 0.25
ANALYSIS_MAX_ATTEMPTS: Final[int] = 6
ANALYSIS_BASE_DELAY: Final[float] = 2.0
ANALYSIS_MAX_DELAY: Final[float] = 60.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff around an async operation.

    The delay before retry ``n`` (1-based) is ``base_delay * 2 ** (n - 1)``, capped by
    ``max_delay``. When ``retry_after`` extracts a server-supplied delay from the error,
    that value is used as-is instead. ``max_total_wait`` bounds the sum of all
    sleeps; once the next sleep would cross it the last error is raised.

    Exhaustion re-raises the last error itself, so callers can still tell a missing
    object from a throttled one.
    """

    name: str
    max_attempts: int
    base_delay: float
    is_retryable: Callable[[BaseException], bool]
    max_delay: float | None = None
    max_total_wait: float | None = None
    retry_after: Callable[[BaseException], float | None] | None = None
    sleep: Callable[[float], Awaitable[None]] = field(default=anyio.sleep, compare=False)

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        if self.retry_after is not None and exc is not None:
            hinted = self.retry_after(exc)
            if hinted is not None and hinted > 0:
                return hinted
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        waited = 0.0
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt, exc)
                if self.max_total_wait is not None and waited + delay > self.max_total_wait:
                    logger.warning(
                        "retry_budget_exhausted",
                        extra={"policy": self.name, "operation": label, "attempt": attempt, "waited_seconds": waited},
                    )
                    raise
                logger.info(
                    "retrying_operation",
                    extra={
                        "policy": self.name,
                        "operation": label,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                await self.sleep(delay)
                waited += delay
                attempt += 1


def is_transient_db_error(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OperationalError, PoolTimeoutError, asyncio.TimeoutError, ConnectionError))


def is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return isinstance(exc, httpx.TransportError)


def http_retry_after(exc: BaseException) -> float | None:
    """Seconds from a ``Retry-After`` header, given either as a delay or an HTTP date."""
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    raw = (exc.response.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def content_store_policy(is_retryable: Callable[[BaseException], bool]) -> RetryPolicy:
    return RetryPolicy(
        name="content_store",
        max_attempts=CONTENT_STORE_MAX_ATTEMPTS,
        base_delay=CONTENT_STORE_BASE_DELAY,
        is_retryable=is_retryable,
    )


def metadata_store_policy() -> RetryPolicy:
    return RetryPolicy(
        name="metadata_store",
        max_attempts=METADATA_STORE_MAX_ATTEMPTS,
        base_delay=METADATA_STORE_BASE_DELAY,
        is_retryable=is_transient_db_error,
    )


def analysis_policy(max_total_wait: float | None = None) -> RetryPolicy:
    return RetryPolicy(
        name="analysis",
        max_attempts=ANALYSIS_MAX_ATTEMPTS,
        base_delay=ANALYSIS_BASE_DELAY,
        max_delay=ANALYSIS_MAX_DELAY,
        max_total_wait=max_total_wait,
        is_retryable=is_retryable_http_error,
        retry_after=http_retry_after,
    )
