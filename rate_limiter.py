# rate_limiter.py
"""In-memory token-bucket rate limiter for the protected user endpoints.

Limits are expressed per minute and keyed by caller (client and user).
"""
import math
import time


class _Bucket:
    __slots__ = ("tokens", "last_refill")

    def __init__(self, capacity: float, now: float):
        self.tokens = capacity
        self.last_refill = now


class RateLimitInfo:
    """Outcome of one ``check()`` call."""

    __slots__ = ("allowed", "limit", "remaining", "reset_after")

    def __init__(self, allowed: bool, limit: int, remaining: int, reset_after: float):
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_after = reset_after

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_after))

    def headers(self):
        h = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            h["Retry-After"] = str(self.retry_after)
        return h


class RateLimiter:
    """Token bucket refilled continuously at ``per_minute / 60`` tokens per second.

    Buckets idle for longer than ``max_idle`` seconds are dropped during
    ``check()``, at most once every ``cleanup_interval`` seconds.
    """

    def __init__(self, per_minute: int, clock=time.monotonic,
                 max_idle: float = 3600.0, cleanup_interval: float = 300.0):
        self.capacity = per_minute
        self.rate = per_minute / 60.0
        self.clock = clock
        self.max_idle = max_idle
        self.cleanup_interval = cleanup_interval
        self._buckets = {}
        self._last_cleanup = clock()

    def check(self, key: str) -> RateLimitInfo:
        now = self.clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            self.cleanup(self.max_idle)

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _Bucket(self.capacity, now)

        elapsed = now - bucket.last_refill
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
        bucket.last_refill = now

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            reset_after = (self.capacity - bucket.tokens) / self.rate if self.rate > 0 else 0
            return RateLimitInfo(True, self.capacity, int(bucket.tokens), reset_after)

        reset_after = (1.0 - bucket.tokens) / self.rate if self.rate > 0 else 60.0
        return RateLimitInfo(False, self.capacity, 0, reset_after)

    def cleanup(self, max_age: float = 3600.0) -> int:
        """Drop buckets idle for more than ``max_age`` seconds."""
        now = self.clock()
        self._last_cleanup = now
        stale = [key for key, bucket in self._buckets.items() if now - bucket.last_refill > max_age]
        for key in stale:
            del self._buckets[key]
        return len(stale)
