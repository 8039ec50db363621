"""Backoff for transient git/gh failures, built on tenacity."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from attofleet.errors import FleetError

T = TypeVar("T")

RetryHook = Callable[[RetryCallState], None]


def is_retryable(exc: BaseException) -> bool:
    """Fleet errors say for themselves; connection drops and timeouts always retry."""
    if isinstance(exc, FleetError):
        return exc.retryable
    return isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def with_retry(
    *,
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    on_retry: RetryHook | None = None,
) -> Any:
    """Tenacity decorator for coroutines: exponential backoff, last error re-raised.

    Args:
        max_attempts: Attempts including the first call.
        min_wait: Lower bound on the sleep between attempts (seconds).
        max_wait: Upper bound on the sleep between attempts (seconds).
        on_retry: Called before each sleep, e.g. to log the failure.
    """
    kwargs: dict[str, Any] = {
        "stop": stop_after_attempt(max_attempts),
        "wait": wait_exponential(multiplier=2.0, min=min_wait, max=max_wait),
        "retry": retry_if_exception(is_retryable),
        "reraise": True,
    }
    if on_retry:
        kwargs["before_sleep"] = on_retry
    return retry(**kwargs)


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    on_retry: RetryHook | None = None,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying transient failures."""

    @with_retry(max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait, on_retry=on_retry)
    async def _wrapped() -> T:
        return await fn(*args, **kwargs)

    return await _wrapped()
