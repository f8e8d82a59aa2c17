"""Token-bucket rate limiting shared by the HTTP providers."""
from __future__ import annotations

import asyncio
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from placelabel.providers.base import ProviderTimeout

T = TypeVar("T")

_INITIAL_BACKOFF = 0.1
_MAX_BACKOFF = 0.6


class RateLimiter:
    """Caps request rate and concurrency, backing off after transport errors."""

    def __init__(
        self,
        *,
        capacity: int = 4,
        refill_interval: float = 0.3,
        max_concurrent: int = 2,
        clock: Callable[[], float] = time.monotonic,
        jitter: Optional[Callable[[], float]] = None,
    ) -> None:
        self._capacity = capacity
        self._refill_interval = refill_interval
        self._clock = clock
        self._jitter = jitter or (lambda: random.uniform(0.8, 1.2))
        self._tokens = capacity
        self._last_refill = clock()
        self._backoff_delay = _INITIAL_BACKOFF
        self._lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_concurrent)

    @property
    def tokens(self) -> int:
        return self._tokens

    @property
    def backoff_delay(self) -> float:
        return self._backoff_delay

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute ``operation`` once a token and a concurrency slot are free."""
        await self._acquire_token()
        async with self._slots:
            try:
                result = await operation()
            except (httpx.TransportError, ProviderTimeout):
                await self._apply_backoff()
                raise
        self._backoff_delay = _INITIAL_BACKOFF
        return result

    def _refill(self) -> None:
        now = self._clock()
        added = int((now - self._last_refill) / self._refill_interval)
        if added <= 0:
            return
        self._tokens = min(self._capacity, self._tokens + added)
        if self._tokens == self._capacity:
            # A full bucket does not bank time.
            self._last_refill = now
        else:
            self._last_refill += added * self._refill_interval

    async def _acquire_token(self) -> None:
        while True:
            async with self._lock:
                self._refill()
                if self._tokens > 0:
                    self._tokens -= 1
                    return
            await asyncio.sleep(self._refill_interval)

    async def _apply_backoff(self) -> None:
        await asyncio.sleep(self._backoff_delay * self._jitter())
        self._backoff_delay = min(_MAX_BACKOFF, self._backoff_delay * 2)
