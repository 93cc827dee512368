"""
Sliding-window rate limiter.

- Keyed by endpoint + client IP.
- In-memory for a single process, Redis sorted sets when several instances
  share the limit.
- Fails open: if the backend cannot be reached the request is allowed.
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Protocol
from uuid import uuid4

from redis import Redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter(Protocol):
    def hit(self, key: str) -> RateLimitDecision:
        ...


class SlidingWindowLimiter:
    def __init__(self, max_requests: int, window_seconds: float, time_fn: Callable[[], float] = time.monotonic):
        self.max_requests = max(1, max_requests)
        self.window_seconds = max(1.0, float(window_seconds))
        self.time_fn = time_fn
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time_fn()

    def __len__(self) -> int:
        return len(self._hits)

    def _sweep(self, now: float) -> None:
        # Keys whose newest hit left the window; one-off callers would otherwise stay forever.
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_seconds]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str) -> RateLimitDecision:
        now = self.time_fn()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.max_requests:
                retry_after = math.ceil(hits[0] + self.window_seconds - now)
                return RateLimitDecision(allowed=False, retry_after_seconds=max(1, retry_after))
            hits.append(now)
            return RateLimitDecision(allowed=True)


class RedisSlidingWindowLimiter:
    """Same policy as SlidingWindowLimiter, shared through a Redis sorted set per key."""

    def __init__(
        self,
        client: Redis,
        max_requests: int,
        window_seconds: float,
        *,
        prefix: str = "rate-limits:",
        time_fn: Callable[[], float] = time.time,
    ):
        self.client = client
        self.max_requests = max(1, max_requests)
        self.window_seconds = max(1.0, float(window_seconds))
        self.prefix = prefix
        self.time_fn = time_fn

    def hit(self, key: str) -> RateLimitDecision:
        now = self.time_fn()
        redis_key = f"{self.prefix}{key}"
        try:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.zcard(redis_key)
            _, oldest, count = pipe.execute()
            if count >= self.max_requests:
                oldest_ts = oldest[0][1] if oldest else now
                retry_after = math.ceil(oldest_ts + self.window_seconds - now)
                return RateLimitDecision(allowed=False, retry_after_seconds=max(1, retry_after))
            pipe = self.client.pipeline()
            pipe.zadd(redis_key, {f"{now}:{uuid4().hex}": now})
            pipe.expire(redis_key, int(math.ceil(self.window_seconds)))
            pipe.execute()
        except RedisError:
            logger.warning("rate limiter backend unavailable, allowing request", extra={"path": key})
            return RateLimitDecision(allowed=True)
        return RateLimitDecision(allowed=True)


def client_ip(headers, peer_host: Optional[str]) -> str:
    """First hop of x-forwarded-for, else the peer address."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer_host or "unknown"
