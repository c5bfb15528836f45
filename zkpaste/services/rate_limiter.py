"""In-memory token-bucket rate limiting keyed by an opaque client key."""
from __future__ import annotations

import heapq
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

DEFAULT_MAX_KEYS = 50_000


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class RateLimiter:
    """
    Per-key token bucket: ``capacity`` permits, refilled continuously at
    ``refill_per_minute``.

    Refill and consume happen under one lock so concurrent calls for a key
    never spend from a stale count. A key seen for the first time starts
    with a full bucket.

    Buckets idle long enough to have refilled completely behave exactly like
    new ones, so they are dropped when the map grows past ``max_keys`` or on
    every ``sweep_interval`` seconds of traffic. If the map is still at
    ``max_keys`` after that, the least recently touched buckets go, bringing
    it back to nine tenths of the cap.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_minute: float,
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = float(capacity)
        self.refill_per_second = refill_per_minute / 60.0
        self._max_keys = max_keys
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def try_acquire(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if len(self._buckets) >= self._max_keys:
                self._evict_idle_locked(now)
                if len(self._buckets) >= self._max_keys:
                    self._evict_oldest_locked()
            elif now - self._last_sweep >= self._sweep_interval:
                self._evict_idle_locked(now)

            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=self.capacity, last_refill=now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.last_refill)
                bucket.tokens = min(
                    self.capacity, bucket.tokens + elapsed * self.refill_per_second
                )
                bucket.last_refill = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    def tokens(self, key: str) -> Optional[float]:
        """Current (un-refilled) token count for ``key``, or ``None`` if unseen."""
        with self._lock:
            bucket = self._buckets.get(key)
            return None if bucket is None else bucket.tokens

    def evict_idle(self) -> int:
        with self._lock:
            return self._evict_idle_locked(self._clock())

    def _evict_idle_locked(self, now: float) -> int:
        self._last_sweep = now
        if self.refill_per_second <= 0:
            return 0
        full = [
            key
            for key, b in self._buckets.items()
            if b.tokens + (now - b.last_refill) * self.refill_per_second >= self.capacity
        ]
        for key in full:
            del self._buckets[key]
        return len(full)

    def _evict_oldest_locked(self) -> int:
        target = self._max_keys - max(1, self._max_keys // 10)
        excess = len(self._buckets) - target
        if excess <= 0:
            return 0
        oldest = heapq.nsmallest(
            excess, self._buckets.items(), key=lambda item: item[1].last_refill
        )
        for key, _bucket in oldest:
            del self._buckets[key]
        return excess
