from __future__ import annotations

import asyncio
import random
import time
from typing import Callable


class MinIntervalLimiter:
    """Spaces out calls to a shared backend.

    Callers queue behind one lock, so the concurrent items of a
    classification chunk reach the model backend at most one call per
    interval. A zero interval without jitter turns ``acquire`` into a no-op.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        jitter_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = max(0.0, float(min_interval_seconds))
        self._jitter = max(0.0, float(jitter_seconds))
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    @property
    def enabled(self) -> bool:
        return self._interval > 0 or self._jitter > 0

    async def acquire(self) -> None:
        if not self.enabled:
            return
        async with self._lock:
            delay = self._next_slot - self._clock()
            if delay > 0:
                await asyncio.sleep(delay)
            spread = random.uniform(0.0, self._jitter) if self._jitter else 0.0
            self._next_slot = self._clock() + self._interval + spread
