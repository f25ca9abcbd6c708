"""
Bounded exponential backoff around fallible I/O.

Two curves, keyed on the failure type:

  rate limited (403/429):  base * 3**attempt + U(0, 2s)
  anything else:           base * 2**attempt + U(0, 1s)

The steeper curve keeps retries from resonating with the provider's
rate-limit window. `attempt` is zero-based, so the first retry waits about
`base` seconds either way.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from marketsync.errors import PlayerNotFoundError, RateLimitError, SyncCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MULTIPLIER = 3
GENERIC_MULTIPLIER = 2
RATE_LIMIT_JITTER = 2.0
GENERIC_JITTER = 1.0


def backoff_delay(
    attempt: int,
    base_delay: float,
    rate_limited: bool,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before retry number `attempt` (zero-based)."""
    if rate_limited:
        return base_delay * RATE_LIMIT_MULTIPLIER ** attempt + rng() * RATE_LIMIT_JITTER
    return base_delay * GENERIC_MULTIPLIER ** attempt + rng() * GENERIC_JITTER


def _wait_for(base_delay: float, rng: Callable[[], float]):
    def wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return backoff_delay(
            retry_state.attempt_number - 1,
            base_delay,
            isinstance(exc, RateLimitError),
            rng,
        )

    return wait


def _log_retry(label: Optional[str], max_attempts: int):
    prefix = f"[{label}] " if label else ""

    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        if isinstance(exc, RateLimitError):
            logger.warning(
                "%sRate limit hit (%s), backing off for %.1fs (attempt %d/%d)",
                prefix,
                exc.status_code,
                delay,
                retry_state.attempt_number,
                max_attempts,
            )
        else:
            logger.warning(
                "%sRequest failed: %s. Retrying in %.1fs (attempt %d/%d)",
                prefix,
                exc,
                delay,
                retry_state.attempt_number,
                max_attempts,
            )

    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    base_delay: float = 2.0,
    label: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Await `operation()` up to `max_attempts` times, re-raising the last error.

    `operation` may be any callable returning an awaitable, lambdas included:
    the call and the await both happen inside each attempt. Cancellation and
    not-found lookups are never retried.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_wait_for(base_delay, rng),
        retry=retry_if_not_exception_type(
            (SyncCancelled, PlayerNotFoundError, asyncio.CancelledError)
        ),
        before_sleep=_log_retry(label, max_attempts),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
