"""
Shared Retry & Timeout Utilities
================================
One backoff loop for the endpoint pool, the storage chain and the
confirmation poller.

- BackoffPolicy: attempt budget + exponential delay schedule
- retry_with_backoff: run an async callable until it succeeds, raises a
  non-retryable error, exhausts the budget, hits the deadline or the run is
  cancelled
- race_with_timeout: race an awaitable against a timer (and optionally the
  run's cancellation token), cancelling whichever side loses
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import Cancelled, TransientError
from mintforge.shared.system.logging import Logger


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff schedule: base, base*m, base*m^2, ... capped."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.0  # fraction of the delay, 0.1 = +/-10%

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.base_delay_s * (self.multiplier ** max(0, attempt - 1))
        delay = min(delay, self.max_delay_s)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


class RetryExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{label or 'operation'} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


DEFAULT_RETRYABLE: Tuple[Type[BaseException], ...] = (TransientError, asyncio.TimeoutError)


async def retry_with_backoff(
    fn: Callable[[int], Awaitable[Any]],
    policy: BackoffPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = DEFAULT_RETRYABLE,
    token: Optional[CancellationToken] = None,
    deadline: Optional[float] = None,
    label: str = "",
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> Any:
    """
    Call `fn(attempt)` until it returns.

    Args:
        fn: async callable receiving the 1-based attempt number
        policy: attempt budget and delay schedule
        retry_on: exception types considered transient
        token: run cancellation token; checked before every attempt and wait
        deadline: time.monotonic() value after which no new attempt starts
        label: name used in logs and in RetryExhausted
        on_retry: hook called as (attempt, error, delay) before each wait

    Raises:
        Cancelled: the token fired
        RetryExhausted: every attempt failed with a retryable error
        Anything else `fn` raises, unchanged (non-retryable)
    """
    last_error: Optional[BaseException] = None
    attempt = 0

    for attempt in range(1, policy.max_attempts + 1):
        if token:
            token.raise_if_cancelled()
        try:
            return await fn(attempt)
        except Cancelled:
            raise
        except retry_on as e:
            last_error = e

        if attempt >= policy.max_attempts:
            break

        delay = policy.delay_for(attempt)
        if deadline is not None and time.monotonic() + delay >= deadline:
            Logger.debug(f"[SYSTEM] {label}: deadline reached after attempt {attempt}")
            break

        if on_retry:
            on_retry(attempt, last_error, delay)
        else:
            Logger.debug(f"[SYSTEM] {label}: attempt {attempt} failed ({last_error}), retry in {delay:.1f}s")

        if token:
            await token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    raise RetryExhausted(label, attempt, last_error)


async def race_with_timeout(
    awaitable: Awaitable[Any],
    timeout_s: float,
    token: Optional[CancellationToken] = None,
) -> Any:
    """
    Await `awaitable` for at most `timeout_s` seconds.

    The losing side (timer, work, or cancellation waiter) is always
    cancelled so no timers or tasks outlive the call.

    Raises:
        asyncio.TimeoutError: the timer won
        Cancelled: the token fired before the work completed
    """
    work = asyncio.ensure_future(awaitable)
    waiters = {work}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            if not task.done():
                task.cancel()

    if work in done:
        return work.result()
    if cancel_waiter is not None and cancel_waiter in done:
        raise Cancelled(token.reason or "Run cancelled by caller")
    raise asyncio.TimeoutError(f"timed out after {timeout_s:.1f}s")
