"""
Per-source token bucket rate limiting.

All fetch tasks aimed at one RepairShopr instance share that instance's
bucket, so fanning out per status never exceeds the source's API allowance.
"""

import threading
import time
from dataclasses import dataclass


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    total_wait_time: float = 0.0


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket.

    - Bucket holds up to `capacity` tokens, refilled at `rate` tokens/second
    - Each request consumes one token; callers block until one is available

    Example:
        limiter = TokenBucketRateLimiter(requests_per_minute=150)
        limiter.acquire()
    """

    def __init__(
        self,
        requests_per_minute: int = 150,
        burst_capacity: int | None = None,
        clock=time.monotonic,
        sleep=time.sleep,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")

        self.rate = requests_per_minute / 60.0
        self.capacity = burst_capacity or max(10, requests_per_minute // 10)
        self._clock = clock
        self._sleep = sleep

        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()
        self.stats = RateLimiterStats()

    def _refill(self) -> None:
        """Must hold lock."""
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now

    def acquire(self, timeout: float | None = None) -> bool:
        """Take a token; False if `timeout` seconds pass first."""
        deadline = None if timeout is None else self._clock() + timeout

        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    self.stats.requests_made += 1
                    return True

                wait_time = (1.0 - self._tokens) / self.rate
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return False
                    wait_time = min(wait_time, remaining)

                self.stats.requests_throttled += 1
                self.stats.total_wait_time += wait_time

            self._sleep(wait_time)

    def get_stats(self) -> dict:
        with self._lock:
            self._refill()
            available = self._tokens
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "available_tokens": round(available, 1),
            "rate_per_minute": round(self.rate * 60, 1),
        }


class SourceRateLimiters:
    """One shared bucket per source instance, created on first use."""

    def __init__(self, default_requests_per_minute: int = 150):
        self.default_requests_per_minute = default_requests_per_minute
        self._limiters: dict[str, TokenBucketRateLimiter] = {}
        self._lock = threading.Lock()

    def for_source(
        self,
        source: str,
        requests_per_minute: int | None = None,
    ) -> TokenBucketRateLimiter:
        with self._lock:
            limiter = self._limiters.get(source)
            if limiter is None:
                limiter = TokenBucketRateLimiter(
                    requests_per_minute=requests_per_minute or self.default_requests_per_minute
                )
                self._limiters[source] = limiter
            return limiter

    def get_stats(self) -> dict[str, dict]:
        with self._lock:
            limiters = dict(self._limiters)
        return {source: limiter.get_stats() for source, limiter in limiters.items()}
