# backend/calilights/utils/retry.py
"""
Retry executor for external-service calls.

Every call to the generation, analysis and notification providers goes through
one of two wrappers:

    run_with_retry(func, *args, policy=RetryPolicy.slow(), on_retry=..., **kwargs)
        Bounded attempts with exponential backoff. Errors classified as
        permanent are raised immediately; anything else is retried until the
        attempts run out, then the last error is raised.

    safe_execute(func, *args, fallback=None, context="...", **kwargs)
        One attempt; any failure is logged and the fallback is returned.

Policies come in two named presets (fast/slow) read from settings so tuning
happens in one place instead of per call site.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..config import settings
from ..exceptions import MissionEngineError

logger = logging.getLogger("calilights.retry")

# HTTP statuses in the 4xx range that are still worth retrying
RETRYABLE_CLIENT_STATUSES = (408, 429)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff policy.

    Attributes:
        max_attempts: Total number of invocations, including the first
        initial_delay: Seconds to wait before the first retry
        max_delay: Ceiling for any single wait
        backoff_factor: Multiplier applied to the delay after each retry
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        delay = self.initial_delay * (self.backoff_factor ** (retry_number - 1))
        return min(delay, self.max_delay)

    @classmethod
    def fast(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_fast_max_attempts,
            initial_delay=settings.retry_fast_initial_delay,
            max_delay=settings.retry_fast_max_delay,
            backoff_factor=settings.retry_fast_backoff_factor,
        )

    @classmethod
    def slow(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_slow_max_attempts,
            initial_delay=settings.retry_slow_initial_delay,
            max_delay=settings.retry_slow_max_delay,
            backoff_factor=settings.retry_slow_backoff_factor,
        )


def is_permanent_error(exc: BaseException) -> bool:
    """
    Default classification of failures that must not be retried.

    Domain errors carry their own ``retryable`` flag. HTTP 4xx responses are
    permanent except for request timeouts and rate limiting.
    """
    if isinstance(exc, MissionEngineError):
        return not exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return 400 <= code < 500 and code not in RETRYABLE_CLIENT_STATUSES
    return False


async def run_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    is_permanent: Optional[Callable[[BaseException], bool]] = None,
    **kwargs,
) -> Any:
    """
    Execute an async function with bounded retries and exponential backoff.

    Args:
        func: Async function to execute
        policy: Backoff policy (defaults to RetryPolicy.slow())
        on_retry: Optional callback(attempt, error) invoked before each retry
        is_permanent: Optional classifier overriding is_permanent_error
        *args, **kwargs: Arguments to pass to func

    Returns:
        Result from func

    Raises:
        The first permanent error, or the last error once attempts run out
    """
    policy = policy or RetryPolicy.slow()
    classify = is_permanent or is_permanent_error
    attempts = max(1, policy.max_attempts)
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if classify(e):
                raise
            if attempt >= attempts:
                logger.error(f"{name} failed after {attempt} attempts: {e}")
                raise

            delay = policy.delay_for(attempt)
            if on_retry:
                on_retry(attempt, e)
            logger.warning(
                f"Transient error in {name} (attempt {attempt}/{attempts}): {e}. "
                f"Waiting {delay:.2f}s before retry..."
            )
            await asyncio.sleep(delay)


async def safe_execute(
    func: Callable[..., Awaitable[Any]],
    *args,
    fallback: Any = None,
    context: str = "",
    **kwargs,
) -> Any:
    """
    Run an async function once and return ``fallback`` instead of raising.

    Used for best-effort side effects (notifications, bridge evaluation) that
    must never fail the transition that triggered them.
    """
    try:
        return await func(*args, **kwargs)
    except Exception as e:
        label = context or getattr(func, "__name__", "operation")
        logger.warning(f"{label} failed, using fallback: {e}")
        return fallback
