"""
Retry with backoff.

Wraps a whole unit of work (a deployment attempt, not individual backend
calls) in a bounded number of attempts. Only errors classified as transient
are retried; everything else propagates on the first failure.

Delay between attempts is linear: ``backoff_ms * attempt``, capped at
``max_delay_ms``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from capgate.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Network error codes and quota markers treated as transient
RETRYABLE_ERROR_CODES = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNREFUSED",
    "EPIPE",
    "RATE_LIMIT",
    "QUOTA_EXCEEDED",
)

RETRYABLE_HTTP_STATUSES = frozenset({429, 502, 503, 504})

RETRYABLE_MESSAGE_MARKERS = (
    "socket hang up",
    "request timeout",
    "too many requests",
    "service unavailable",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds for a retried operation."""
    max_attempts: int = 3
    backoff_ms: int = 2000
    max_delay_ms: int = 30000

    def delay_ms(self, attempt: int) -> int:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.backoff_ms * attempt, self.max_delay_ms)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an exception as transient (retry) or permanent (propagate)."""
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in RETRYABLE_ERROR_CODES:
        return True

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int) and status in RETRYABLE_HTTP_STATUSES:
        return True

    message = str(error)
    if any(marker in message for marker in RETRYABLE_ERROR_CODES):
        return True

    lowered = message.lower()
    return any(marker in lowered for marker in RETRYABLE_MESSAGE_MARKERS)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    context: Optional[str] = None,
    retryable: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, int, BaseException], None]] = None,
) -> T:
    """
    Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Raises:
        The original exception if it is not retryable.
        RetryExhaustedError after ``policy.max_attempts`` retryable failures.
    """
    policy = policy or RetryPolicy()
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            last_error = exc

            if not retryable(exc):
                raise

            if attempt == policy.max_attempts:
                break

            delay = policy.delay_ms(attempt)
            logger.warning(
                "Attempt %d/%d failed%s, retrying in %dms: %s",
                attempt,
                policy.max_attempts,
                f" ({context})" if context else "",
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            await sleep(delay / 1000)

    suffix = f" ({context})" if context else ""
    raise RetryExhaustedError(
        f"Operation failed after {policy.max_attempts} attempts{suffix}: {last_error}",
        attempts=policy.max_attempts,
        last_error=last_error,
    ) from last_error
