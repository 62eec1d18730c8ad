"""Process-scoped mutable state shared by the update pipeline.

Everything that has to be shared between concurrent refreshes, upgrades and
the notification worker lives on one StateService object: token caches, the
latest-digest cache, rate limiters, in-flight notification markers and the
upgrade lock table. Components receive it explicitly; get_state_service()
returns the process-wide instance used by the application.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Dict, Optional

from dockwatch.services.rate_limiter import (
    SlidingWindowRateLimiter,
    create_discord_rate_limiter,
    create_registry_rate_limiter,
)
from dockwatch.services.upgrade_lock import DEFAULT_STALE_LOCK_SECONDS, UpgradeLockManager

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 5 * 60
DEFAULT_DIGEST_TTL_SECONDS = 30 * 60
PORTAINER_TOKEN_TTL_SECONDS = 8 * 60 * 60


class TTLCache:
    """In-memory cache with per-entry expiry."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize cache with TTL.

        Args:
            ttl_seconds: Default time-to-live for new entries
            clock: Monotonic clock, injectable for tests
        """
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        """Get a cached value if not expired."""
        entry = self._cache.get(key)
        if entry is None:
            return default

        if self._clock() >= entry["expires_at"]:
            del self._cache[key]
            return default

        return entry["value"]

    def __contains__(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a value, optionally overriding the default TTL."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._cache[key] = {"value": value, "expires_at": self._clock() + ttl}

    def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix.

        Returns:
            Number of entries removed
        """
        keys = [key for key in self._cache if key.startswith(prefix)]
        for key in keys:
            del self._cache[key]
        return len(keys)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries from cache.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if now >= entry["expires_at"]]
        for key in expired_keys:
            del self._cache[key]
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._cache)


class StateService:
    """Shared caches, limiters and markers for one process."""

    def __init__(
        self,
        token_ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        digest_ttl_seconds: float = DEFAULT_DIGEST_TTL_SECONDS,
        stale_lock_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        registry_limiter: Optional[SlidingWindowRateLimiter] = None,
        discord_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self._clock = clock
        self.registry_tokens = TTLCache(token_ttl_seconds, clock)
        self.portainer_tokens = TTLCache(PORTAINER_TOKEN_TTL_SECONDS, clock)
        self.digest_cache = TTLCache(digest_ttl_seconds, clock)
        self.registry_limiter = registry_limiter or create_registry_rate_limiter()
        self.discord_limiter = discord_limiter or create_discord_rate_limiter()
        self.upgrade_locks = UpgradeLockManager(stale_lock_seconds, clock)
        # portainer instance id -> unused image count from the last forced refresh
        self.unused_image_counts: Dict[int, int] = {}

        # dedup key -> expiry (None = never expires)
        self._notification_markers: Dict[str, Optional[float]] = {}
        self._marker_lock = asyncio.Lock()

    def configure(
        self,
        token_ttl_seconds: Optional[float] = None,
        digest_ttl_seconds: Optional[float] = None,
        stale_lock_seconds: Optional[float] = None,
    ) -> None:
        """Apply TTLs loaded from settings. Existing entries keep their expiry."""
        if token_ttl_seconds is not None:
            self.registry_tokens.ttl_seconds = token_ttl_seconds
        if digest_ttl_seconds is not None:
            self.digest_cache.ttl_seconds = digest_ttl_seconds
        if stale_lock_seconds is not None:
            self.upgrade_locks.stale_after_seconds = stale_lock_seconds

    async def claim_notification(self, dedup_key: str) -> bool:
        """Atomically mark a notification as in flight.

        Returns:
            True if the caller now owns the key, False if it is already
            claimed (queued, in flight, or delivered earlier in this process)
        """
        async with self._marker_lock:
            expires_at = self._notification_markers.get(dedup_key, 0.0)
            if dedup_key in self._notification_markers and (
                expires_at is None or expires_at > self._clock()
            ):
                return False
            self._notification_markers[dedup_key] = None
            return True

    async def release_notification(self, dedup_key: str) -> None:
        """Roll back a claim after a failed delivery so a later cycle can retry."""
        async with self._marker_lock:
            self._notification_markers.pop(dedup_key, None)

    async def confirm_notification(self, dedup_key: str, ttl_seconds: Optional[float] = None) -> None:
        """Keep a delivered key claimed, forever or for ttl_seconds."""
        async with self._marker_lock:
            self._notification_markers[dedup_key] = (
                None if ttl_seconds is None else self._clock() + ttl_seconds
            )

    def is_notification_claimed(self, dedup_key: str) -> bool:
        if dedup_key not in self._notification_markers:
            return False
        expires_at = self._notification_markers[dedup_key]
        return expires_at is None or expires_at > self._clock()

    def reset(self) -> None:
        """Drop all cached state."""
        self.registry_tokens.clear()
        self.portainer_tokens.clear()
        self.digest_cache.clear()
        self.upgrade_locks.clear()
        self.unused_image_counts.clear()
        self._notification_markers.clear()


_state_service: Optional[StateService] = None


def get_state_service() -> StateService:
    """Get or create the process-wide state service."""
    global _state_service

    if _state_service is None:
        _state_service = StateService()

    return _state_service
