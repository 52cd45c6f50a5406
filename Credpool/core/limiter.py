from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional


class TokenBucketLimiter:
    """Shared token bucket for outgoing verifier requests, with optional min-delay pacing.

    `requests_per_min=None` disables the bucket and keeps only the min-delay spacing.
    """

    def __init__(
        self,
        *,
        requests_per_min: Optional[int],
        min_delay_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.capacity = max(1, int(requests_per_min)) if requests_per_min else None
        self.tokens = float(self.capacity or 0)
        self.refill_rate = (self.capacity / 60.0) if self.capacity else 0.0
        self.min_delay_s = max(0.0, float(min_delay_s))
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_refill = clock()
        self._last_request_at: Optional[float] = None

    @classmethod
    def from_rate(cls, requests_per_min: Optional[int], min_delay_s: float = 0.0) -> Optional["TokenBucketLimiter"]:
        if not requests_per_min and not min_delay_s:
            return None
        return cls(requests_per_min=requests_per_min, min_delay_s=min_delay_s)

    def _wait_needed(self, now: float) -> float:
        if self.capacity is not None:
            elapsed = now - self._last_refill
            if elapsed > 0:
                self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
                self._last_refill = now
            if self.tokens < 1.0:
                return (1.0 - self.tokens) / self.refill_rate
        if self._last_request_at is not None:
            since_last = now - self._last_request_at
            if since_last < self.min_delay_s:
                return self.min_delay_s - since_last
        return 0.0

    async def acquire(self) -> float:
        """Wait for a request slot; returns the total seconds spent waiting."""

        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                wait_s = self._wait_needed(now)
                if wait_s <= 0:
                    if self.capacity is not None:
                        self.tokens -= 1.0
                    self._last_request_at = now
                    return waited
            await self._sleep(wait_s)
            waited += wait_s
