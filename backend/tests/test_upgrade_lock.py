"""Tests for per-container upgrade locks (dockwatch/services/upgrade_lock.py)."""

import pytest

from dockwatch.exceptions import UpgradeInProgressError
from dockwatch.services.upgrade_lock import UpgradeLockManager


class TestUpgradeLockManager:
    """Test suite for UpgradeLockManager."""

    async def test_second_acquire_rejected(self, clock):
        """Test that a held lock rejects a second upgrade with the owner named."""
        locks = UpgradeLockManager(clock=clock)
        await locks.acquire(1, "abc123abc123", owner="user")

        with pytest.raises(UpgradeInProgressError, match="Upgrade already in progress") as exc_info:
            await locks.acquire(1, "abc123abc123", owner="batch")

        assert exc_info.value.owner == "user"

    async def test_other_instance_not_blocked(self, clock):
        locks = UpgradeLockManager(clock=clock)
        await locks.acquire(1, "abc123abc123")

        await locks.acquire(2, "abc123abc123")

        assert locks.size == 2

    async def test_hold_releases_on_error(self, clock):
        locks = UpgradeLockManager(clock=clock)

        with pytest.raises(RuntimeError):
            async with locks.hold(1, "web"):
                raise RuntimeError("step failed")

        assert locks.is_locked(1, "web") is False

    async def test_stale_lock_reclaimed(self, clock):
        """Test that a lock older than the stale threshold is taken over."""
        locks = UpgradeLockManager(stale_after_seconds=600, clock=clock)
        await locks.acquire(1, "web", owner="crashed")
        clock.now += 601

        assert locks.is_locked(1, "web") is False
        await locks.acquire(1, "web", owner="user")
        assert locks.is_locked(1, "web") is True

    async def test_release_when_not_held(self, clock):
        locks = UpgradeLockManager(clock=clock)

        await locks.release(1, "web")

        assert locks.size == 0
