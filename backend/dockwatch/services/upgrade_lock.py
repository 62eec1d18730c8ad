"""Per-container upgrade locks.

At most one upgrade state machine may run for a given (instance, container)
pair. A second request fails fast with UpgradeInProgressError instead of
waiting, since two interleaved stop/remove/create sequences would corrupt the
container.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from dockwatch.exceptions import UpgradeInProgressError

logger = logging.getLogger(__name__)

DEFAULT_STALE_LOCK_SECONDS = 10 * 60


@dataclass
class UpgradeLock:
    """A held lock."""

    owner: str
    acquired_at: float


class UpgradeLockManager:
    """In-process lock table keyed by (instance_id, container_id)."""

    def __init__(
        self,
        stale_after_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._locks: dict[tuple[str, str], UpgradeLock] = {}
        self._guard = asyncio.Lock()

    @staticmethod
    def _key(instance_id, container_id: str) -> tuple[str, str]:
        return (str(instance_id), container_id)

    def _is_stale(self, lock: UpgradeLock) -> bool:
        return self._clock() - lock.acquired_at > self.stale_after_seconds

    async def acquire(self, instance_id, container_id: str, owner: str = "manual") -> None:
        """Take the lock or raise UpgradeInProgressError.

        A lock older than the stale threshold is assumed abandoned and reclaimed.
        """
        key = self._key(instance_id, container_id)
        async with self._guard:
            existing = self._locks.get(key)
            if existing is not None:
                if not self._is_stale(existing):
                    raise UpgradeInProgressError(instance_id, container_id, existing.owner)
                logger.warning(
                    f"Releasing stale upgrade lock for {container_id[:12]} "
                    f"(owner={existing.owner}, age={self._clock() - existing.acquired_at:.0f}s)"
                )
            self._locks[key] = UpgradeLock(owner=owner, acquired_at=self._clock())

    async def release(self, instance_id, container_id: str) -> None:
        """Release the lock (no-op when not held)."""
        async with self._guard:
            self._locks.pop(self._key(instance_id, container_id), None)

    def is_locked(self, instance_id, container_id: str) -> bool:
        lock = self._locks.get(self._key(instance_id, container_id))
        return lock is not None and not self._is_stale(lock)

    @asynccontextmanager
    async def hold(self, instance_id, container_id: str, owner: str = "manual") -> AsyncIterator[None]:
        """Hold the lock for the duration of the block."""
        await self.acquire(instance_id, container_id, owner)
        try:
            yield
        finally:
            await self.release(instance_id, container_id)

    @property
    def size(self) -> int:
        return len(self._locks)

    def clear(self) -> None:
        self._locks.clear()
