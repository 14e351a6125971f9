"""
Sliding-window rate limiter for the Licensing service.
"""

import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from fastapi import Request

from shared.errors import RateLimitError
from shared.logging import get_logger


@dataclass(frozen=True)
class RateLimitRule:
    """Ceiling of ``max_requests`` per ``window_seconds`` for one endpoint."""
    window_seconds: float
    max_requests: int


@dataclass
class WindowDecision:
    allowed: bool
    current_count: int
    limit: int
    retry_after: int = 0


class RateLimitBackend(ABC):
    """Storage for per-client request timestamps."""

    @abstractmethod
    async def hit(self, key: str, rule: RateLimitRule, now: float) -> WindowDecision:
        """Drop expired timestamps, then record ``now`` unless at the ceiling."""

    async def close(self) -> None:
        return None


class InMemoryRateLimitBackend(RateLimitBackend):
    """Process-local backend.

    Counts are per serving process; run more than one process behind a
    balancer and each enforces its own ceiling. Use the Redis backend when
    that approximation is not acceptable.
    """

    def __init__(self, prune_threshold: int = 10000):
        self.prune_threshold = prune_threshold
        self._hits: Dict[str, List[float]] = {}
        self._windows: Dict[str, float] = {}
        self.logger = get_logger("licensing.rate_limiter.memory")

    async def hit(self, key: str, rule: RateLimitRule, now: float) -> WindowDecision:
        window_start = now - rule.window_seconds
        timestamps = [ts for ts in self._hits.get(key, []) if ts > window_start]

        if len(timestamps) >= rule.max_requests:
            self._hits[key] = timestamps
            retry_after = max(1, math.ceil(timestamps[0] + rule.window_seconds - now))
            return WindowDecision(False, len(timestamps), rule.max_requests, retry_after)

        timestamps.append(now)
        self._hits[key] = timestamps
        self._windows[key] = rule.window_seconds

        if len(self._hits) > self.prune_threshold:
            self.prune(now)

        return WindowDecision(True, len(timestamps), rule.max_requests)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop clients with no timestamps left inside their window."""
        now = time.time() if now is None else now
        stale = [
            key for key, timestamps in self._hits.items()
            if not timestamps or timestamps[-1] <= now - self._windows.get(key, 0.0)
        ]
        for key in stale:
            self._hits.pop(key, None)
            self._windows.pop(key, None)
        if stale:
            self.logger.info("Pruned rate limit state", removed=len(stale), remaining=len(self._hits))
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)


# Prune, count and insert execute as one atomic script. Scores come back
# as strings; Redis truncates Lua numbers to integers.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_score = ARGV[1]
    if oldest[2] then
        oldest_score = oldest[2]
    end
    return {0, count, oldest_score}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, tonumber(ARGV[5]))
return {1, count + 1, ARGV[1]}
"""


class RedisRateLimitBackend(RateLimitBackend):
    """Shared-store backend: one sorted set of timestamps per client key."""

    def __init__(self, redis_url: str, key_prefix: str = "license_rate_limit"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("licensing.rate_limiter.redis")
        self._redis: Optional[redis.Redis] = None
        self._hit_script = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def _get_hit_script(self):
        if self._hit_script is None:
            redis_client = await self._get_redis()
            self._hit_script = redis_client.register_script(SLIDING_WINDOW_SCRIPT)
        return self._hit_script

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def hit(self, key: str, rule: RateLimitRule, now: float) -> WindowDecision:
        script = await self._get_hit_script()
        ttl = max(1, math.ceil(rule.window_seconds))

        allowed, count, oldest = await script(
            keys=[self._make_key(key)],
            args=[now, rule.window_seconds, rule.max_requests, f"{now}:{uuid.uuid4().hex}", ttl],
        )
        count = int(count)

        if not int(allowed):
            retry_after = max(1, math.ceil(float(oldest) + rule.window_seconds - now))
            return WindowDecision(False, count, rule.max_requests, retry_after)
        return WindowDecision(True, count, rule.max_requests)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
            self._hit_script = None


class SlidingWindowRateLimiter:
    """Per-endpoint sliding-window limiter keyed by client address."""

    def __init__(
        self,
        rules: Dict[str, RateLimitRule],
        backend: Optional[RateLimitBackend] = None,
        clock: Callable[[], float] = time.time,
        on_reject: Optional[Callable[[str], None]] = None,
    ):
        self.rules = dict(rules)
        self.backend = backend or InMemoryRateLimitBackend()
        self.clock = clock
        self.on_reject = on_reject
        self.logger = get_logger("licensing.rate_limiter")

    async def check(self, endpoint: str, client_id: str) -> WindowDecision:
        """Record one request; raises RateLimitError at the ceiling."""
        rule = self.rules.get(endpoint)
        if rule is None:
            return WindowDecision(True, 0, 0)

        decision = await self.backend.hit(f"{endpoint}:{client_id}", rule, self.clock())
        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                endpoint=endpoint,
                client_id=client_id,
                current_count=decision.current_count,
                limit=decision.limit,
            )
            if self.on_reject is not None:
                self.on_reject(endpoint)
            raise RateLimitError(
                "Too many requests",
                retry_after=decision.retry_after,
                details={"endpoint": endpoint, "limit": decision.limit, "window_seconds": rule.window_seconds},
            )
        return decision

    async def check_request(self, request: Request, endpoint: str) -> WindowDecision:
        return await self.check(endpoint, get_client_id(request))

    async def close(self) -> None:
        await self.backend.close()


def get_client_id(request: Request) -> str:
    """Client address, honoring proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"
