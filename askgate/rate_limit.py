"""Sliding-window rate limiting keyed by customer identity.

Usage:
    limiter = RateLimiter(InMemoryRateLimitStore(), window_seconds=60)
    limiter.check("ask", identity="t1", limit=50)   # raises RateLimitError when exceeded

Counters live in an injected store so one process can use memory and a fleet of
instances can share Redis:
- InMemoryRateLimitStore: deque of hit timestamps per key, guarded by a lock.
- RedisRateLimitStore: sorted set per key, pruned and counted atomically in Lua.

Both prune hits older than the window before counting, then append the new hit.
Ordering of concurrent hits within the same millisecond is not guaranteed.
"""
from __future__ import annotations

import math
import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

import redis
from fastapi import Request

from askgate.errors import RateLimitError


def get_client_ip(request: Optional[Request], trust_xff: bool, real_ip_header: str) -> str:
    """Derive client IP from Request, honoring X-Forwarded-For when configured."""
    if request is None:
        return "unknown"
    if trust_xff:
        xff = request.headers.get(real_ip_header)
        if xff:
            # Use first IP in X-Forwarded-For, trimming spaces
            return xff.split(",")[0].strip()
    host = request.client.host if request.client else None
    return host or "unknown"


class RateLimitStore(Protocol):
    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> Tuple[bool, int]:
        """Record one request unless `limit` hits already fall inside the window.

        Returns:
            Tuple[bool, int]: (allowed, retry_after_seconds).
        """
        ...


def _retry_after(oldest: float, now: float, window_seconds: float) -> int:
    return max(1, math.ceil(oldest + window_seconds - now))


class InMemoryRateLimitStore:
    """Process-local counters; suitable for a single instance and for tests."""

    def __init__(self):
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> Tuple[bool, int]:
        cutoff = now - window_seconds
        with self._lock:
            if now - self._last_sweep >= window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False, _retry_after(hits[0], now, window_seconds)
            hits.append(now)
            return True, 0

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._hits.get(key, ()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, cutoff: float) -> None:
        # Drop identities whose every hit fell out of the window; caller holds the lock
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]


# Lua script: sliding window over a sorted set of hit timestamps
# KEYS[1] = window key
# ARGV[1] = now (seconds, float)
# ARGV[2] = window (seconds)
# ARGV[3] = limit
# ARGV[4] = unique member for this hit
SLIDING_WINDOW_LUA = r"""
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local retry_after = 1
    if oldest[2] then
        retry_after = math.max(1, math.ceil(tonumber(oldest[2]) + window - now))
    end
    return {0, retry_after}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window) + 1)
return {1, 0}
"""


_redis_clients: Dict[str, redis.Redis] = {}


def get_redis(url: str) -> redis.Redis:
    """Return a cached Redis client for the given URL (decode_responses=True)."""
    client = _redis_clients.get(url)
    if client is None:
        client = _redis_clients[url] = redis.from_url(url, decode_responses=True)
    return client


class RedisRateLimitStore:
    """Counters shared by every instance pointed at the same Redis."""

    def __init__(self, client: redis.Redis, namespace: str = "gate:rl"):
        self._redis = client
        self._namespace = namespace
        self._script = client.register_script(SLIDING_WINDOW_LUA)

    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> Tuple[bool, int]:
        res = self._script(
            keys=[f"{self._namespace}:{key}"],
            args=[repr(now), str(window_seconds), str(limit), f"{now}:{uuid.uuid4().hex}"],
        )
        return int(res[0]) == 1, int(res[1])


class RateLimiter:
    """Apply per-endpoint ceilings over a shared sliding window.

    Args:
        store: Counter backend.
        window_seconds: Window length shared by every endpoint.
        clock: Time source in seconds (tests pass a fake clock).
    """

    def __init__(self, store: RateLimitStore, window_seconds: float = 60, clock: Callable[[], float] = time.time):
        self.store = store
        self.window_seconds = window_seconds
        self.clock = clock

    def check(self, endpoint: str, identity: str, limit: int) -> None:
        """Count one request for (endpoint, identity).

        Raises:
            RateLimitError: The ceiling was already reached inside the window.
        """
        allowed, retry_after = self.store.hit(f"{endpoint}:{identity}", self.clock(), self.window_seconds, limit)
        if not allowed:
            raise RateLimitError(
                f"Too many requests. Limit: {limit} requests per {int(self.window_seconds)} seconds",
                retry_after=retry_after,
                identity=identity,
                endpoint=endpoint,
            )
