"""Bounded retry with exponential backoff for remote operations.

Only ``TransientError`` is retried by default. Integrity failures, permission
problems and other fatal errors surface immediately. When the attempts run
out, the last transient error propagates unchanged.

Example:

    >>> policy = RetryPolicy(max_attempts=3, base_delay=0.1)
    >>> result = await retry_async(lambda: fetch_page(cursor), policy=policy)

"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import TransientError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff curve for one logical operation."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 16.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            message = "max_attempts must be at least 1"
            raise ValueError(message)
        if self.base_delay < 0 or self.max_delay < 0:
            message = "Backoff delays cannot be negative"
            raise ValueError(message)

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retrying after failed attempt ``attempt`` (1-based).

        The ceiling doubles per attempt up to ``max_delay``. With jitter the
        delay is drawn from the upper half of the ceiling.
        """
        ceiling = min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))
        if not self.jitter:
            return ceiling
        half = ceiling / 2
        return half + random.uniform(0, half)


def is_transient(exc: BaseException) -> bool:
    """Default retry predicate: retry transient failures only."""
    return isinstance(exc, TransientError)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_transient,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine function. It is called afresh for
            every attempt so that it can pick up refreshed credentials.
        policy: Attempt budget and backoff curve.
        is_retryable: Predicate deciding whether a failure is retried.
        description: Label used in log messages.
        sleep: Awaitable used for backoff delays (replaceable in tests).

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: The last failure once it is not retryable or attempts
            are exhausted.

    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                if attempt > 1:
                    logger.debug("%s failed after %d attempts: %s", description, attempt, exc)
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
            attempt += 1


def retrying(
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = is_transient,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate a coroutine function so each call is retried under ``policy``."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                policy=policy,
                is_retryable=is_retryable,
                description=func.__qualname__,
            )

        return wrapper

    return decorator
