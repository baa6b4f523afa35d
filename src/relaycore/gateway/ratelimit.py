"""Per-credential token bucket admission control."""

from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucketLimiter:
    """Fixed-capacity buckets with continuous refill, keyed by credential.

    A request that finds fewer than one token is rejected; nothing is
    queued.  ``clock`` returns seconds and defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_sec: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_per_sec < 0:
            raise ValueError("refill_per_sec must be >= 0")
        self.capacity = capacity
        self.refill_per_sec = refill_per_sec
        self._clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()

    def _refilled(self, key: str, now: float) -> float:
        tokens, last = self._buckets.get(key, (float(self.capacity), now))
        elapsed = max(0.0, now - last)
        return min(float(self.capacity), tokens + elapsed * self.refill_per_sec)

    def consume(self, key: str) -> bool:
        """Take one token for *key*; False when the bucket is empty."""
        with self._lock:
            now = self._clock()
            tokens = self._refilled(key, now)
            if tokens < 1.0:
                self._buckets[key] = (tokens, now)
                return False
            self._buckets[key] = (tokens - 1.0, now)
            return True

    def available(self, key: str) -> float:
        with self._lock:
            return self._refilled(key, self._clock())
