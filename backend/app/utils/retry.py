"""Retry policy for outbound model calls.

Only transient provider failures are retried: rate limiting, overload (529),
server errors and connection problems. Client errors, validation failures and
cancellation propagate on the first occurrence.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import anthropic
import structlog

from app.utils.cancellation import RunCancelledError

log = structlog.get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay_s: float = 1.0
    retryable_statuses: frozenset[int] = frozenset({429, 529})
    retry_server_errors: bool = True

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based): base, 2*base, 4*base..."""
        return self.base_delay_s * (2**attempt)

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, RunCancelledError):
            return False
        if isinstance(exc, (anthropic.RateLimitError, anthropic.InternalServerError)):
            return True
        if isinstance(exc, anthropic.APIStatusError):
            status = exc.status_code
            if status in self.retryable_statuses:
                return True
            return self.retry_server_errors and status >= 500
        # APITimeoutError is a subclass of APIConnectionError
        return isinstance(exc, anthropic.APIConnectionError)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
) -> T:
    """Await fn(), retrying per policy. Re-raises the last error when exhausted."""
    for attempt in range(1 + policy.max_retries):
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_retries or not policy.is_retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            log.warning(
                "retrying_model_call",
                label=label,
                attempt=attempt + 1,
                delay_s=delay,
                error_type=type(exc).__name__,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
