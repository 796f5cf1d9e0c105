"""Token-bucket rate limiter shared by all re-encryption workers."""
import time
import asyncio
from collections.abc import Callable
from typing import Optional

from ..exceptions import CancelledRunError


async def cancellable_sleep(delay: float, cancel: Optional[asyncio.Event] = None) -> None:
    """Sleep for delay seconds, or until cancel is set.

    Raises:
        CancelledRunError: If cancel is set before or during the sleep.
    """
    if cancel is None:
        await asyncio.sleep(delay)
        return
    if cancel.is_set():
        raise CancelledRunError("Run cancelled")
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise CancelledRunError("Run cancelled")


class RateLimiter:
    """Allows ``rate`` acquisitions per second with bursts up to ``burst``.

    Worker concurrency and request rate are independent: any number of
    workers can share one limiter.
    """

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<RateLimiter rate={self.rate}/s burst={self.burst}>"

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self, cancel: Optional[asyncio.Event] = None) -> None:
        # waiters queue on the lock, so tokens are handed out in FIFO order
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await cancellable_sleep((1 - self._tokens) / self.rate, cancel)
