import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from config import get_settings


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class TokenBucketLimiter:
    """Per-key token bucket: ``capacity`` burst, ``refill_rate`` tokens every ``interval`` seconds."""

    def __init__(
        self,
        capacity: int,
        refill_rate: int,
        interval: float,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if capacity <= 0 or refill_rate <= 0 or interval <= 0:
            raise ValueError("Token bucket parameters must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.interval = interval
        self._clock = clock or time.monotonic
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def _refill(self, bucket: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.updated_at)
        periods = int(elapsed // self.interval)
        if periods:
            bucket.tokens = min(
                float(self.capacity), bucket.tokens + periods * self.refill_rate
            )
            bucket.updated_at += periods * self.interval

    def check(self, key: object, cost: int = 1) -> RateDecision:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(str(key))
            if bucket is None:
                bucket = _Bucket(tokens=float(self.capacity), updated_at=now)
                self._buckets[str(key)] = bucket
            self._refill(bucket, now)
            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return RateDecision(allowed=True, remaining=int(bucket.tokens))
            retry_after = max(0.0, bucket.updated_at + self.interval - now)
            return RateDecision(
                allowed=False, remaining=int(bucket.tokens), retry_after=retry_after
            )

    def prune(self) -> int:
        """Drop buckets that have refilled to capacity."""
        now = self._clock()
        with self._lock:
            full = []
            for key, bucket in self._buckets.items():
                self._refill(bucket, now)
                if bucket.tokens >= self.capacity:
                    full.append(key)
            for key in full:
                del self._buckets[key]
        return len(full)

    def reset(self, key: Optional[object] = None) -> None:
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(str(key), None)


@lru_cache(maxsize=1)
def get_rate_limiter() -> TokenBucketLimiter:
    settings = get_settings()
    return TokenBucketLimiter(
        capacity=settings.rate_limit_capacity,
        refill_rate=settings.rate_limit_refill,
        interval=settings.rate_limit_interval_secs,
    )
