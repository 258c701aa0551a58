"""
Retry combinator shared by the reconciler and the reverse-sync engine.

Attempts are bounded; the delay before attempt ``n + 1`` is
``base_delay * 2 ** n`` capped at ``max_delay``, plus a random jitter.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from club_sync.config import RetryConfig
from club_sync.errors import TransientRemoteError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Parameters of a bounded exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    @classmethod
    def none(cls) -> "RetryPolicy":
        """A single attempt, no delay."""
        return cls(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0)

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed attempt with zero-based index ``attempt``."""
        backoff = min(self.base_delay * (2 ** attempt), self.max_delay)
        return backoff + random.uniform(0, self.jitter) if self.jitter else backoff


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (TransientRemoteError,),
    on_retry: RetryCallback | None = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or attempts are exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else, and
    the final attempt's failure, propagates unchanged.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count and backoff parameters
        retry_on: Exception types worth another attempt
        on_retry: Called with (attempt number, error, delay) before sleeping
        description: Label used in log messages
        sleep: Awaitable sleep, injectable for tests
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= policy.max_attempts:
                raise

            delay = policy.delay_for(attempt)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))

            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}): "
                f"{e}. Retrying in {delay:.1f}s"
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)

            await sleep(delay)
            attempt += 1
