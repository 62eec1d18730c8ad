"""Sliding window rate limiting for registries and Discord webhooks.

Provides per-key sliding window limits with optional bounded concurrency.
Registries are keyed by normalized registry name, Discord by webhook URL.
Check-and-record happens under a per-key lock, so two concurrent refreshes
can never double-count a slot in the same window.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class RegistryType(Enum):
    """Registries with known rate limits."""

    DOCKERHUB = "dockerhub"
    GHCR = "ghcr"
    LSCR = "lscr"
    GCR = "gcr"
    QUAY = "quay"
    GITLAB = "gitlab"


@dataclass
class RateLimits:
    """Rate limit configuration for one key.

    Attributes:
        requests_per_window: Maximum requests inside the sliding window
        window_seconds: Window length in seconds
        concurrent_limit: Maximum concurrent requests (None = unbounded)
    """

    requests_per_window: int
    window_seconds: float = 60.0
    concurrent_limit: int | None = None


# Conservative per-minute limits per registry
REGISTRY_RATE_LIMITS: dict[RegistryType, RateLimits] = {
    # Docker Hub: 100 pulls/6h anonymous, manifest GETs count against it
    RegistryType.DOCKERHUB: RateLimits(requests_per_window=30, concurrent_limit=5),
    RegistryType.GHCR: RateLimits(requests_per_window=60, concurrent_limit=10),
    RegistryType.LSCR: RateLimits(requests_per_window=60, concurrent_limit=10),
    RegistryType.GCR: RateLimits(requests_per_window=60, concurrent_limit=10),
    RegistryType.QUAY: RateLimits(requests_per_window=60, concurrent_limit=10),
    RegistryType.GITLAB: RateLimits(requests_per_window=60, concurrent_limit=10),
}

DEFAULT_REGISTRY_RATE_LIMITS = RateLimits(requests_per_window=30, concurrent_limit=5)

# Discord: 30 requests per 60 seconds per webhook
DISCORD_WEBHOOK_RATE_LIMITS = RateLimits(requests_per_window=30, window_seconds=60.0)

REGISTRY_HOSTNAME_MAP = {
    "docker.io": "dockerhub",
    "index.docker.io": "dockerhub",
    "registry-1.docker.io": "dockerhub",
    "registry.hub.docker.com": "dockerhub",
    "ghcr.io": "ghcr",
    "lscr.io": "lscr",
    "gcr.io": "gcr",
    "quay.io": "quay",
    "registry.gitlab.com": "gitlab",
}


def normalize_registry_name(registry: str) -> str:
    """Map registry hostnames onto the short names used as limiter keys."""
    registry_lower = registry.lower().strip()
    return REGISTRY_HOSTNAME_MAP.get(registry_lower, registry_lower)


def registry_limits(registry: str) -> RateLimits:
    """Limits for a registry hostname or short name."""
    normalized = normalize_registry_name(registry)
    for registry_type, limits in REGISTRY_RATE_LIMITS.items():
        if registry_type.value == normalized:
            return limits
    return DEFAULT_REGISTRY_RATE_LIMITS


@dataclass
class WindowState:
    """Rate limit state for a single key.

    Attributes:
        request_times: Monotonic timestamps inside the sliding window
        blocked_until: Monotonic time before which no request may start (429 handling)
        semaphore: Optional concurrency bound
        lock: Serializes check-and-record for this key
    """

    request_times: list[float] = field(default_factory=list)
    blocked_until: float = 0.0
    semaphore: asyncio.Semaphore | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SlidingWindowRateLimiter:
    """Per-key sliding window limiter.

    Example:
        limiter = SlidingWindowRateLimiter(registry_limits, normalize_registry_name)
        async with RateLimitedRequest(limiter, "ghcr.io"):
            # Make registry API call
            pass
    """

    def __init__(
        self,
        limits_for: Callable[[str], RateLimits],
        normalize_key: Callable[[str], str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "rate-limiter",
    ):
        """Initialize rate limiter.

        Args:
            limits_for: Returns the limits that apply to a key
            normalize_key: Optional key normalization (e.g. hostname -> registry name)
            clock: Monotonic clock, injectable for tests
            sleep: Async sleep, injectable for tests
            name: Label used in log messages
        """
        self._limits_for = limits_for
        self._normalize_key = normalize_key or (lambda key: key)
        self._clock = clock
        self._sleep = sleep
        self._name = name
        self._states: dict[str, WindowState] = {}
        self._lock = asyncio.Lock()

        # Metrics tracking
        self._wait_count: dict[str, int] = {}
        self._total_requests: dict[str, int] = {}

    async def _get_state(self, key: str) -> WindowState:
        async with self._lock:
            if key not in self._states:
                limits = self._limits_for(key)
                self._states[key] = WindowState(
                    semaphore=(
                        asyncio.Semaphore(limits.concurrent_limit)
                        if limits.concurrent_limit
                        else None
                    )
                )
                logger.debug(
                    f"[{self._name}] Created state for {key}: "
                    f"{limits.requests_per_window} req/{limits.window_seconds:.0f}s"
                )
            return self._states[key]

    def _prune(self, state: WindowState, now: float, window: float) -> None:
        window_start = now - window
        state.request_times = [t for t in state.request_times if t > window_start]

    def _wait_needed(self, state: WindowState, limits: RateLimits, now: float) -> float:
        wait = max(0.0, state.blocked_until - now)
        if len(state.request_times) >= limits.requests_per_window:
            oldest = min(state.request_times)
            wait = max(wait, (oldest + limits.window_seconds) - now)
        return wait

    async def acquire(self, raw_key: str) -> float:
        """Acquire a slot for one request.

        Blocks until the window (and any reactive block from a 429) allows the
        request, then records it.

        Returns:
            Seconds spent waiting for the window (0 if no wait was needed)
        """
        key = self._normalize_key(raw_key)
        state = await self._get_state(key)
        limits = self._limits_for(key)

        self._total_requests[key] = self._total_requests.get(key, 0) + 1

        if state.semaphore is not None:
            await state.semaphore.acquire()

        waited = 0.0
        try:
            async with state.lock:
                while True:
                    now = self._clock()
                    self._prune(state, now, limits.window_seconds)
                    wait_needed = self._wait_needed(state, limits, now)
                    if wait_needed <= 0:
                        break
                    logger.debug(
                        f"[{self._name}] Rate limiting {key}: waiting {wait_needed:.2f}s "
                        f"({len(state.request_times)} requests in window)"
                    )
                    self._wait_count[key] = self._wait_count.get(key, 0) + 1
                    await self._sleep(wait_needed)
                    waited += wait_needed

                state.request_times.append(self._clock())
        except BaseException:
            # Cancelled while waiting: the caller never reaches release()
            if state.semaphore is not None:
                state.semaphore.release()
            raise

        return waited

    async def release(self, raw_key: str) -> None:
        """Release a concurrency slot taken by acquire()."""
        state = await self._get_state(self._normalize_key(raw_key))
        if state.semaphore is not None:
            state.semaphore.release()

    async def block_for(self, raw_key: str, seconds: float) -> None:
        """Block a key for ``seconds`` after the remote side answered 429."""
        key = self._normalize_key(raw_key)
        state = await self._get_state(key)
        async with state.lock:
            state.blocked_until = max(state.blocked_until, self._clock() + max(seconds, 0.0))
        logger.warning(f"[{self._name}] {key} rate limited by remote, blocked for {seconds:.1f}s")

    async def time_until_available(self, raw_key: str) -> float:
        """Seconds until the next request for this key could start."""
        key = self._normalize_key(raw_key)
        state = await self._get_state(key)
        limits = self._limits_for(key)
        async with state.lock:
            now = self._clock()
            self._prune(state, now, limits.window_seconds)
            return self._wait_needed(state, limits, now)

    def get_metrics(self) -> dict[str, dict[str, int]]:
        """Per-key counters: total_requests and wait_count."""
        return {
            key: {
                "total_requests": self._total_requests.get(key, 0),
                "wait_count": self._wait_count.get(key, 0),
            }
            for key in set(self._total_requests.keys()) | set(self._wait_count.keys())
        }

    def reset_metrics(self) -> None:
        """Reset counters (typically at the start of a refresh)."""
        self._wait_count.clear()
        self._total_requests.clear()


class RateLimitedRequest:
    """Async context manager around acquire()/release().

    Example:
        async with RateLimitedRequest(limiter, "dockerhub") as ctx:
            result = await client.get(url)
        print(f"Wait time: {ctx.wait_time}s")
    """

    def __init__(self, limiter: SlidingWindowRateLimiter, key: str):
        self._limiter = limiter
        self._key = key
        self.wait_time: float = 0.0

    async def __aenter__(self) -> "RateLimitedRequest":
        self.wait_time = await self._limiter.acquire(self._key)
        return self

    async def __aexit__(
        self,
        _exc_type: type | None,
        _exc_val: BaseException | None,
        _exc_tb: object | None,
    ) -> bool:
        await self._limiter.release(self._key)
        return False


def create_registry_rate_limiter(**kwargs) -> SlidingWindowRateLimiter:
    """Limiter keyed by registry with the documented per-registry limits."""
    return SlidingWindowRateLimiter(
        registry_limits, normalize_registry_name, name="registry", **kwargs
    )


def create_discord_rate_limiter(**kwargs) -> SlidingWindowRateLimiter:
    """Limiter keyed by webhook URL, 30 requests per 60 seconds each."""
    return SlidingWindowRateLimiter(
        lambda _key: DISCORD_WEBHOOK_RATE_LIMITS, name="discord", **kwargs
    )
