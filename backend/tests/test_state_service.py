"""Tests for shared process state (dockwatch/services/state_service.py)."""

import asyncio

from dockwatch.services.state_service import StateService, TTLCache, get_state_service


class TestTTLCache:
    """Test suite for TTLCache."""

    def test_expiry(self, clock):
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.set("token", "abc")

        clock.now += 59
        assert cache.get("token") == "abc"
        clock.now += 1
        assert cache.get("token") is None
        assert "token" not in cache

    def test_per_entry_ttl(self, clock):
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.set("short", 1, ttl_seconds=5)

        clock.now += 5
        assert cache.get("short") is None

    def test_delete_prefix(self, clock):
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.set("digest:a|linux/amd64", 1)
        cache.set("digest:a|linux/arm64", 2)
        cache.set("digest:b|linux/amd64", 3)

        assert cache.delete_prefix("digest:a|") == 2
        assert len(cache) == 1

    def test_cleanup_expired(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("old", 1)
        clock.now += 5
        cache.set("new", 2)
        clock.now += 6

        assert cache.cleanup_expired() == 1
        assert cache.get("new") == 2

    def test_falsy_values_are_cached(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("tag", "")

        assert cache.get("tag") == ""
        assert "tag" in cache


class TestNotificationMarkers:
    """Test suite for notification claim/confirm/release."""

    async def test_claim_is_exclusive(self):
        """Test that only one of several concurrent claims wins."""
        state = StateService()

        results = await asyncio.gather(*(state.claim_notification("k") for _ in range(5)))

        assert results.count(True) == 1

    async def test_release_allows_retry(self):
        state = StateService()
        await state.claim_notification("k")

        await state.release_notification("k")

        assert await state.claim_notification("k") is True

    async def test_confirm_with_ttl_expires(self, clock):
        state = StateService(clock=clock)
        await state.claim_notification("k")
        await state.confirm_notification("k", ttl_seconds=3600)

        assert state.is_notification_claimed("k") is True
        clock.now += 3600
        assert state.is_notification_claimed("k") is False
        assert await state.claim_notification("k") is True


class TestStateService:
    """Test suite for StateService."""

    def test_configure_updates_ttls(self):
        state = StateService()

        state.configure(token_ttl_seconds=60, digest_ttl_seconds=120, stale_lock_seconds=30)

        assert state.registry_tokens.ttl_seconds == 60
        assert state.digest_cache.ttl_seconds == 120
        assert state.upgrade_locks.stale_after_seconds == 30

    async def test_reset(self):
        state = StateService()
        state.digest_cache.set("k", "v")
        state.unused_image_counts[1] = 3
        await state.claim_notification("n")

        state.reset()

        assert len(state.digest_cache) == 0
        assert state.unused_image_counts == {}
        assert state.is_notification_claimed("n") is False

    def test_process_wide_instance(self):
        assert get_state_service() is get_state_service()
