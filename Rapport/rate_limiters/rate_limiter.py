from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional, Protocol

import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    wait_seconds: int = 0


class RateLimiter(Protocol):
    max_requests: int
    window_seconds: int

    def check(self, key: str) -> RateLimitDecision: ...


# In-process sliding window: one deque of request timestamps per key
class SlidingWindowRateLimiter:
    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._next_sweep = clock() + window_seconds
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        min_ts = now - self.window_seconds
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(min_ts)
                self._next_sweep = now + self.window_seconds

            window = self._requests.get(key)
            if window is not None:
                while window and window[0] <= min_ts:
                    window.popleft()
                if not window:
                    del self._requests[key]
                    window = None

            if window is not None and len(window) >= self.max_requests:
                wait_s = max(1, math.ceil(window[0] + self.window_seconds - now))
                return RateLimitDecision(allowed=False, wait_seconds=wait_s)

            self._requests.setdefault(key, deque()).append(now)
            return RateLimitDecision(allowed=True, wait_seconds=0)

    # Drops keys whose newest request has left the window; caller holds the lock
    def _sweep(self, min_ts: float) -> None:
        stale = [key for key, window in self._requests.items() if not window or window[-1] <= min_ts]
        for key in stale:
            del self._requests[key]
        if stale:
            logger.debug("rate_limit.sweep: dropped=%d remaining=%d", len(stale), len(self._requests))

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()


# Sliding window over a Redis sorted set so limits hold across replicas
class RedisSlidingWindowRateLimiter:
    def __init__(self, client: "redis.Redis", *, max_requests: int, window_seconds: int, key_prefix: str):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "RedisSlidingWindowRateLimiter":
        return cls(redis.from_url(redis_url, decode_responses=True), **kwargs)

    def check(self, key: str) -> RateLimitDecision:
        redis_key = f"{self.key_prefix}:{key}"
        now_ts = datetime.now(timezone.utc).timestamp()
        min_ts = now_ts - self.window_seconds

        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, 0, min_ts)    # drop requests older than the window
            pipe.zcard(redis_key)                          # requests still inside the window
            pipe.zrange(redis_key, 0, 0, withscores=True)  # oldest request, for the wait estimate
            pipe.expire(redis_key, self.window_seconds + 5)
            _, count, oldest, _ = pipe.execute()

            if int(count) >= self.max_requests:
                oldest_ts = None
                if oldest and isinstance(oldest, list):
                    oldest_ts = float(oldest[0][1])
                if oldest_ts is None:
                    return RateLimitDecision(allowed=False, wait_seconds=self.window_seconds)
                wait_s = max(1, math.ceil((oldest_ts + self.window_seconds) - now_ts))
                return RateLimitDecision(allowed=False, wait_seconds=wait_s)

            self._client.zadd(redis_key, {str(now_ts): now_ts})
            self._client.expire(redis_key, self.window_seconds + 5)
            return RateLimitDecision(allowed=True, wait_seconds=0)
        # Redis down/unreachable: fail open
        except redis.RedisError:
            logger.warning("rate_limit.redis.unavailable: prefix=%s", self.key_prefix)
            return RateLimitDecision(allowed=True, wait_seconds=0)


def build_rate_limiter(
    *,
    name: str,
    max_requests: int,
    window_seconds: int,
    redis_url: Optional[str] = None,
) -> RateLimiter:
    if redis_url:
        return RedisSlidingWindowRateLimiter.from_url(
            redis_url,
            max_requests=max_requests,
            window_seconds=window_seconds,
            key_prefix=f"rate:{name}",
        )
    return SlidingWindowRateLimiter(max_requests=max_requests, window_seconds=window_seconds)
