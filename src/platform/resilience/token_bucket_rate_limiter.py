"""
Token Bucket Rate Limiter - one bucket per client identity

A bucket holds up to `capacity` tokens and refills continuously at
`refill_per_second`. A request spends one token; an empty bucket rejects with
the time until the next token. Buckets are created full on first use and
dropped again once idle long enough to have refilled completely.
"""

import threading
import time
from typing import Callable, Dict

import attrs

from src.platform.exception.exceptions import RateLimitedError


@attrs.define
class _Bucket:
    tokens: float
    updated_at: float


class TokenBucketRateLimiter:
    def __init__(
        self,
        *,
        capacity: int,
        refill_per_second: float,
        max_buckets: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1 or refill_per_second <= 0:
            raise ValueError('capacity must be >= 1 and refill_per_second > 0')
        self.capacity = float(capacity)
        self.refill_per_second = refill_per_second
        self.max_buckets = max_buckets
        self.clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def try_acquire(self, key: str, cost: float = 1.0) -> float:
        """Spend `cost` tokens. Returns 0.0 when admitted, else seconds until it would be."""
        now = self.clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self.max_buckets:
                    self._evict_idle(now)
                bucket = _Bucket(tokens=self.capacity, updated_at=now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.refill_per_second)
                bucket.updated_at = now

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return 0.0
            return (cost - bucket.tokens) / self.refill_per_second

    def acquire(self, key: str) -> None:
        retry_after = self.try_acquire(key)
        if retry_after > 0:
            raise RateLimitedError(f'Rate limit exceeded for {key}', retry_after=retry_after)

    def _evict_idle(self, now: float) -> None:
        full_after = self.capacity / self.refill_per_second
        for key in [k for k, b in self._buckets.items() if now - b.updated_at >= full_after]:
            del self._buckets[key]
