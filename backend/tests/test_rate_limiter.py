"""Tests for the sliding window rate limiter (dockwatch/services/rate_limiter.py)."""

import asyncio

import pytest

from dockwatch.services.rate_limiter import (
    DEFAULT_REGISTRY_RATE_LIMITS,
    RateLimitedRequest,
    RateLimits,
    SlidingWindowRateLimiter,
    create_discord_rate_limiter,
    normalize_registry_name,
    registry_limits,
)


@pytest.fixture
def limiter(clock):
    return SlidingWindowRateLimiter(
        lambda key: RateLimits(requests_per_window=2, window_seconds=10),
        clock=clock,
        sleep=clock.sleep,
    )


class TestRegistryLimits:
    """Test suite for registry limit lookup."""

    def test_hostnames_normalized(self):
        assert normalize_registry_name("registry-1.docker.io") == "dockerhub"
        assert normalize_registry_name("GHCR.io") == "ghcr"
        assert normalize_registry_name("registry.local:5000") == "registry.local:5000"

    def test_docker_hub_limits(self):
        assert registry_limits("docker.io").requests_per_window == 30

    def test_unknown_registry_defaults(self):
        assert registry_limits("registry.local:5000") is DEFAULT_REGISTRY_RATE_LIMITS


class TestSlidingWindow:
    """Test suite for SlidingWindowRateLimiter."""

    async def test_within_limit_no_wait(self, limiter, clock):
        assert await limiter.acquire("ghcr.io") == 0
        assert await limiter.acquire("ghcr.io") == 0
        assert clock.sleeps == []

    async def test_waits_for_oldest_request_to_leave_window(self, limiter, clock):
        """Test that the third request waits until the first leaves the window."""
        await limiter.acquire("ghcr.io")
        await clock.sleep(4)
        await limiter.acquire("ghcr.io")

        waited = await limiter.acquire("ghcr.io")

        assert waited == 6
        assert clock.sleeps == [4, 6]

    async def test_keys_are_independent(self, limiter, clock):
        await limiter.acquire("a")
        await limiter.acquire("a")

        assert await limiter.acquire("b") == 0

    async def test_block_for_delays_next_request(self, limiter, clock):
        """Test that a 429 block delays the next request by Retry-After."""
        await limiter.block_for("https://discord.com/api/webhooks/1/x", 2)

        waited = await limiter.acquire("https://discord.com/api/webhooks/1/x")

        assert waited == 2

    async def test_time_until_available(self, limiter, clock):
        await limiter.acquire("a")
        await limiter.acquire("a")

        assert await limiter.time_until_available("a") == 10

    async def test_metrics(self, limiter):
        await limiter.acquire("a")
        await limiter.acquire("a")
        await limiter.acquire("a")

        assert limiter.get_metrics() == {"a": {"total_requests": 3, "wait_count": 1}}
        limiter.reset_metrics()
        assert limiter.get_metrics() == {}


class TestRateLimitedRequest:
    """Test suite for the RateLimitedRequest context manager."""

    async def test_concurrency_slot_released(self, clock):
        limiter = SlidingWindowRateLimiter(
            lambda key: RateLimits(requests_per_window=100, concurrent_limit=1),
            clock=clock,
            sleep=clock.sleep,
        )

        async with RateLimitedRequest(limiter, "ghcr.io") as ctx:
            assert ctx.wait_time == 0
        async with RateLimitedRequest(limiter, "ghcr.io"):
            pass

        state = limiter._states["ghcr.io"]
        assert state.semaphore._value == 1

    async def test_discord_limiter_allows_30_per_minute(self, clock):
        limiter = create_discord_rate_limiter(clock=clock, sleep=clock.sleep)

        for _ in range(30):
            await limiter.acquire("hook")
        waited = await limiter.acquire("hook")

        assert waited == 60

    async def test_cancelled_waiter_returns_concurrency_slot(self, clock):
        """Test that cancelling a request waiting on the window frees its slot."""
        waiting = asyncio.Event()

        async def blocking_sleep(seconds):
            waiting.set()
            await asyncio.Event().wait()

        limiter = SlidingWindowRateLimiter(
            lambda key: RateLimits(requests_per_window=1, concurrent_limit=2),
            clock=clock,
            sleep=blocking_sleep,
        )
        async with RateLimitedRequest(limiter, "dockerhub"):
            pass

        task = asyncio.create_task(limiter.acquire("dockerhub"))
        await waiting.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = limiter._states["dockerhub"]
        assert state.semaphore._value == 2
        assert not state.lock.locked()
