"""
Unit tests for the sliding-window rate limiter.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from service_licensing.app.ratelimit.sliding_window import (
    InMemoryRateLimitBackend,
    RateLimitRule,
    RedisRateLimitBackend,
    SLIDING_WINDOW_SCRIPT,
    SlidingWindowRateLimiter,
    get_client_id,
)
from shared.errors import RateLimitError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSlidingWindowRateLimiter:
    """Test cases for SlidingWindowRateLimiter."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def rejected(self):
        return []

    @pytest.fixture
    def rate_limiter(self, clock, rejected):
        return SlidingWindowRateLimiter(
            rules={"registry": RateLimitRule(window_seconds=60, max_requests=3),
                   "health": RateLimitRule(window_seconds=10, max_requests=1)},
            backend=InMemoryRateLimitBackend(),
            clock=clock,
            on_reject=rejected.append,
        )

    @pytest.mark.asyncio
    async def test_ceiling_plus_one_rejected(self, rate_limiter, rejected):
        """Test the (C+1)-th request inside the window is rejected."""
        for _ in range(3):
            decision = await rate_limiter.check("registry", "10.0.0.1")
            assert decision.allowed

        with pytest.raises(RateLimitError) as exc_info:
            await rate_limiter.check("registry", "10.0.0.1")
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after >= 1
        assert rejected == ["registry"]

    @pytest.mark.asyncio
    async def test_accepted_after_window(self, rate_limiter, clock):
        """Test a request is accepted once the window has elapsed."""
        for _ in range(3):
            await rate_limiter.check("registry", "10.0.0.1")
        with pytest.raises(RateLimitError):
            await rate_limiter.check("registry", "10.0.0.1")

        clock.now += 61
        decision = await rate_limiter.check("registry", "10.0.0.1")
        assert decision.allowed
        assert decision.current_count == 1

    @pytest.mark.asyncio
    async def test_window_slides(self, rate_limiter, clock):
        """Test only timestamps older than the window are dropped."""
        await rate_limiter.check("registry", "10.0.0.1")
        clock.now += 30
        await rate_limiter.check("registry", "10.0.0.1")
        await rate_limiter.check("registry", "10.0.0.1")

        clock.now += 31
        decision = await rate_limiter.check("registry", "10.0.0.1")
        assert decision.current_count == 3

    @pytest.mark.asyncio
    async def test_clients_and_endpoints_independent(self, rate_limiter):
        """Test separate clients and endpoints have separate budgets."""
        await rate_limiter.check("health", "10.0.0.1")
        assert (await rate_limiter.check("health", "10.0.0.2")).allowed
        assert (await rate_limiter.check("registry", "10.0.0.1")).allowed
        with pytest.raises(RateLimitError):
            await rate_limiter.check("health", "10.0.0.1")

    @pytest.mark.asyncio
    async def test_unconfigured_endpoint_not_limited(self, rate_limiter):
        """Test endpoints without a rule pass through."""
        for _ in range(10):
            assert (await rate_limiter.check("webhook", "10.0.0.1")).allowed


class TestInMemoryRateLimitBackend:
    """Test cases for InMemoryRateLimitBackend."""

    @pytest.mark.asyncio
    async def test_prunes_past_threshold(self):
        """Test stale clients are dropped once the table grows past the threshold."""
        backend = InMemoryRateLimitBackend(prune_threshold=5)
        rule = RateLimitRule(window_seconds=10, max_requests=5)

        for index in range(5):
            await backend.hit(f"registry:old-{index}", rule, now=100.0)
        assert len(backend) == 5

        await backend.hit("registry:new", rule, now=200.0)
        assert len(backend) == 1

    def test_prune_keeps_active_clients(self):
        """Test clients with recent hits are kept."""
        backend = InMemoryRateLimitBackend()
        backend._hits = {"a": [100.0], "b": [195.0]}
        backend._windows = {"a": 10.0, "b": 10.0}
        assert backend.prune(now=200.0) == 1
        assert len(backend) == 1


class TestRedisRateLimitBackend:
    """Test cases for RedisRateLimitBackend."""

    @pytest.fixture
    def backend(self):
        return RedisRateLimitBackend("redis://localhost:6379/0")

    @pytest.fixture
    def mock_redis(self):
        mock_redis = MagicMock()
        mock_redis.register_script.return_value = AsyncMock()
        return mock_redis

    @pytest.mark.asyncio
    async def test_allows_under_ceiling(self, backend, mock_redis):
        """Test a request under the ceiling is recorded in one atomic call."""
        script = mock_redis.register_script.return_value
        script.return_value = [1, 3, b"1000.0"]

        with patch.object(backend, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            decision = await backend.hit("registry:10.0.0.1", RateLimitRule(60, 3), now=1000.0)

        assert decision.allowed
        assert decision.current_count == 3
        mock_redis.register_script.assert_called_once_with(SLIDING_WINDOW_SCRIPT)
        script.assert_awaited_once()
        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["license_rate_limit:registry:10.0.0.1"]
        assert kwargs["args"][:3] == [1000.0, 60, 3]
        assert kwargs["args"][4] == 60
        assert not mock_redis.zadd.called
        assert not mock_redis.zcard.called

    @pytest.mark.asyncio
    async def test_rejects_at_ceiling(self, backend, mock_redis):
        """Test a rejection reports the wait until the oldest hit expires."""
        mock_redis.register_script.return_value.return_value = [0, 3, b"950.0"]

        with patch.object(backend, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            decision = await backend.hit("registry:10.0.0.1", RateLimitRule(60, 3), now=1000.0)

        assert not decision.allowed
        assert decision.current_count == 3
        assert decision.retry_after == 10

    @pytest.mark.asyncio
    async def test_script_registered_once(self, backend, mock_redis):
        mock_redis.register_script.return_value.return_value = [1, 1, b"1000.0"]

        with patch.object(backend, "_get_redis", new_callable=AsyncMock) as mock_get_redis:
            mock_get_redis.return_value = mock_redis
            await backend.hit("health:a", RateLimitRule(60, 3), now=1000.0)
            await backend.hit("health:b", RateLimitRule(60, 3), now=1001.0)

        mock_redis.register_script.assert_called_once()
        assert mock_redis.register_script.return_value.await_count == 2

    def test_script_is_single_round_trip(self):
        """Test prune, count and insert all live in the one script."""
        for command in ("ZREMRANGEBYSCORE", "ZCARD", "ZADD", "EXPIRE"):
            assert command in SLIDING_WINDOW_SCRIPT


class TestClientId:
    """Test cases for client address extraction."""

    def test_forwarded_for_first_hop(self):
        request = MagicMock()
        request.headers = {"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        assert get_client_id(request) == "203.0.113.5"

    def test_real_ip(self):
        request = MagicMock()
        request.headers = {"X-Real-IP": "203.0.113.9"}
        assert get_client_id(request) == "203.0.113.9"

    def test_socket_address(self):
        request = MagicMock()
        request.headers = {}
        request.client.host = "127.0.0.1"
        assert get_client_id(request) == "127.0.0.1"
