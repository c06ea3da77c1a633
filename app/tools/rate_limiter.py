from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from app.config import settings


class TokenBucket:
    """Async token bucket: `rate` tokens per second, at most `burst` banked.

    Waiters are served in arrival order. A non-positive rate disables limiting.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate = float(rate)
        self.capacity = float(max(int(burst), 1))
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    async def acquire(self) -> None:
        if self.rate <= 0:
            return
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self._tokens) / self.rate)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens


_shared: TokenBucket | None = None
_shared_loop: asyncio.AbstractEventLoop | None = None


def shared_search_limiter() -> TokenBucket:
    """Process-wide limiter for outbound search calls, one per event loop."""
    global _shared, _shared_loop
    loop = asyncio.get_running_loop()
    if _shared is None or _shared_loop is not loop:
        _shared = TokenBucket(settings.search_rps, settings.search_burst)
        _shared_loop = loop
    return _shared
