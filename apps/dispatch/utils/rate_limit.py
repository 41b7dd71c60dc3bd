"""Outbound throughput limiter for provider calls.

Built on the ``limits`` moving-window strategy (the engine behind
Flask-Limiter). ``acquire`` blocks the caller until the window has room,
which spaces provider calls to the configured rate without tying the pace
to a fixed sleep between sends.
"""
from __future__ import annotations

import time
from typing import Callable

from limits import parse, storage, strategies

DEFAULT_RATE = '10/second'


class OutboundThrottle:
    def __init__(
        self,
        rate: str = DEFAULT_RATE,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.rate = rate
        self._item = parse(rate)
        self._limiter = strategies.MovingWindowRateLimiter(storage.MemoryStorage())
        self._sleep = sleep
        self._clock = clock

    def try_acquire(self, key: str = 'provider') -> bool:
        return self._limiter.hit(self._item, key)

    def acquire(self, key: str = 'provider', deadline: float | None = None) -> bool:
        """Wait for a slot under ``key``.

        Returns False when ``deadline`` (a ``clock()`` value) passes before a
        slot frees up.
        """
        while not self._limiter.hit(self._item, key):
            reset_at = self._limiter.get_window_stats(self._item, key)[0]
            now = self._clock()
            if deadline is not None and now >= deadline:
                return False
            wait = max(reset_at - now, 0.01)
            if deadline is not None:
                wait = min(wait, max(deadline - now, 0.01))
            self._sleep(wait)
        return True
