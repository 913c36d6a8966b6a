"""Outbound rate limiting."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import anyio

DEFAULT_SEND_RATE = 10.0
DEFAULT_SEND_BURST = 1


class TokenBucket:
    """Token bucket pacing outbound lines.

    ``rate_per_s`` tokens are added per second up to ``burst``; each send
    takes one. A rate of 0 disables pacing.
    """

    def __init__(
        self,
        rate_per_s: float = DEFAULT_SEND_RATE,
        burst: int = DEFAULT_SEND_BURST,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        if burst < 1:
            raise ValueError(f"burst must be at least 1, got {burst}")
        self.rate = rate_per_s
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated_at = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    def try_acquire(self) -> bool:
        if self.rate <= 0:
            return True
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        """Wait until a token is available, then take it."""
        while not self.try_acquire():
            await self._sleep((1.0 - self._tokens) / self.rate)
