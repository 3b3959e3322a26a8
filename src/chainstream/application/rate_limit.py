from __future__ import annotations

import asyncio
import time
from typing import Callable


class TokenBucket:
    """
    Async token bucket. Callers over the budget wait their turn (FIFO on the lock)
    instead of failing.
    """

    def __init__(self, rate: float, capacity: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else max(1.0, rate))
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, permits: float = 1.0) -> None:
        if permits <= 0:
            return
        if permits > self.capacity:
            raise ValueError(f"cannot acquire {permits} permits from a bucket of {self.capacity}")
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= permits:
                    self._tokens -= permits
                    return
                await asyncio.sleep((permits - self._tokens) / self.rate)
