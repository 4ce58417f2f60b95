"""Rate limiting helpers (Redis preferred, in-memory fallback)."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Deque, Dict, Optional

import redis  # type: ignore

from config import REDIS_URL

logger = logging.getLogger(__name__)

# How often the in-memory fallback forgets keys that have gone quiet
MEMORY_SWEEP_INTERVAL_SECONDS = 60


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int


class RateLimiter:
    """Fixed-window counter in Redis; sliding window in process memory when Redis is down."""

    def __init__(self, redis_url: Optional[str] = REDIS_URL):
        self._redis_url = redis_url
        self._client: Optional[redis.Redis] = None
        self._redis_down_logged = False
        self._lock = Lock()
        self._buckets: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._last_sweep = 0.0

    def _redis(self) -> Optional[redis.Redis]:
        if not self._redis_url:
            return None
        if self._client is None:
            self._client = redis.Redis.from_url(
                self._redis_url, socket_connect_timeout=0.5, socket_timeout=0.5
            )
        return self._client

    def _allow_redis(self, client: redis.Redis, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        pipe = client.pipeline()
        pipe.incr(key, 1)
        pipe.ttl(key)
        current, ttl = pipe.execute()
        if ttl == -1:
            client.expire(key, window_seconds)
            ttl = window_seconds
        if int(current) <= limit:
            return RateLimitResult(allowed=True, retry_after_seconds=0)
        retry_after = int(ttl if ttl and ttl > 0 else window_seconds)
        return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))

    def _allow_memory(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = time.time()
        with self._lock:
            self._sweep(now)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = deque()
            cutoff = now - window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            self._windows[key] = window_seconds
            if len(bucket) < limit:
                bucket.append(now)
                return RateLimitResult(allowed=True, retry_after_seconds=0)
            retry_after = int((bucket[0] + window_seconds) - now)
            return RateLimitResult(allowed=False, retry_after_seconds=max(1, retry_after))

    def _sweep(self, now: float) -> None:
        """Drop buckets whose newest hit is outside their window. Caller holds the lock."""
        if now - self._last_sweep < MEMORY_SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        expired = [
            key
            for key, bucket in self._buckets.items()
            if not bucket or bucket[-1] <= now - self._windows.get(key, 0)
        ]
        for key in expired:
            del self._buckets[key]
            self._windows.pop(key, None)

    def allow(self, *, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        limit = int(limit)
        window_seconds = int(window_seconds)
        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(allowed=True, retry_after_seconds=0)

        client = self._redis()
        if client is not None:
            try:
                return self._allow_redis(client, key, limit, window_seconds)
            except redis.RedisError as exc:
                if not self._redis_down_logged:
                    logger.warning(f"Redis unavailable for rate limiting, using memory: {exc}")
                    self._redis_down_logged = True

        return self._allow_memory(key, limit, window_seconds)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._windows.clear()


default_rate_limiter = RateLimiter()
