"""
Token bucket rate limiter for outbound requests to the upstream API.

Tokens accrue continuously at `rate` per second up to `capacity` (the burst
size). Refill is computed lazily on every acquire, so no background timer is
needed. Accounting happens under a lock held only for arithmetic; waiting
happens outside it with asyncio.sleep, which keeps the wait cooperative and
cancellable.
"""
import asyncio
import time
from threading import Lock
from typing import Callable, Optional

from legis_sync.core.errors import RateLimitCancelled


class RateLimiter:
    """
    Async token bucket.

    Any number of tasks may call acquire() concurrently on one instance.
    Fairness is roughly FIFO: sleepers wake after the time their token needs
    and compete for it again, so sustained overload just means longer waits.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate <= 0:
            raise ValueError("rate must be greater than zero")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = float(rate)
        self.capacity = int(capacity)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = Lock()

    def _refill(self) -> None:
        """Add the tokens earned since the last refill. Caller holds the lock."""
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._last_refill = now

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def _reserve_or_wait_time(self) -> float:
        """Take a token and return 0, or return seconds until one is due."""
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) / self.rate

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Wait until a token is available and consume it.

        Args:
            timeout: Maximum seconds the caller is willing to wait. When the
                wait needed for the next token would exceed what is left of
                this budget, RateLimitCancelled is raised immediately rather
                than granting the token late.

        Raises:
            RateLimitCancelled: the wait budget cannot be met
            asyncio.CancelledError: the waiting task was cancelled
        """
        deadline = None if timeout is None else self._clock() + timeout

        while True:
            wait = self._reserve_or_wait_time()
            if wait == 0.0:
                return
            if deadline is not None:
                remaining = deadline - self._clock()
                if wait > remaining:
                    raise RateLimitCancelled(wait=wait, budget=max(remaining, 0.0))
            await asyncio.sleep(wait)
