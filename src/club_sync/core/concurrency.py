"""
Cooperative concurrency helpers.

- CancellationToken: checked between entities so a stop signal halts a run
  without leaving an entity half-processed
- RateLimiter: bounded random pause between remote calls
- gather_optional: join of independently timed-out awaitables, each
  resolving to its value or None
"""

from __future__ import annotations

import asyncio
import random
import signal
from typing import Any, Awaitable, Callable

from club_sync.config import RateLimitConfig
from club_sync.errors import RemoteError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)


class CancellationToken:
    """
    Flag set by an external stop request.

    Example:
        token = CancellationToken()
        install_signal_handlers(token)
        for entity in entities:
            if token.cancelled:
                break
            await process(entity)
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            logger.warning(f"Stop requested ({reason}); finishing current entity")
        self._cancelled = True
        self.reason = reason


def install_signal_handlers(token: CancellationToken) -> None:
    """Cancel ``token`` on SIGINT/SIGTERM. Must be called inside a running loop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support add_signal_handler
            signal.signal(sig, lambda signum, frame: token.cancel(signal.Signals(signum).name))


class RateLimiter:
    """Sleeps a random duration in ``[min_delay, max_delay]`` between calls."""

    def __init__(
        self,
        min_delay: float = 0.0,
        max_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_delay = min_delay
        self.max_delay = max(min_delay, max_delay)
        self._sleep = sleep
        self._first = True

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "RateLimiter":
        return cls(config.min_delay, config.max_delay)

    async def pause(self) -> None:
        """Wait before the next entity. The first call returns immediately."""
        if self._first:
            self._first = False
            return
        delay = random.uniform(self.min_delay, self.max_delay)
        if delay > 0:
            await self._sleep(delay)

    def reset(self) -> None:
        self._first = True


async def _optional(awaitable: Awaitable[Any], timeout: float, label: str) -> Any:
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Optional capture '{label}' timed out after {timeout:.0f}s")
        return None
    except RemoteError as e:
        logger.warning(f"Optional capture '{label}' failed: {e}")
        return None


async def gather_optional(
    captures: dict[str, Awaitable[Any]],
    timeout: float,
) -> dict[str, Any]:
    """
    Await several optional captures concurrently.

    Each capture has its own timeout and never blocks the others; a capture
    that times out or fails remotely resolves to None.

    Returns:
        Mapping of capture name to value or None
    """
    names = list(captures)
    results = await asyncio.gather(
        *(_optional(captures[name], timeout, name) for name in names)
    )
    return dict(zip(names, results))
