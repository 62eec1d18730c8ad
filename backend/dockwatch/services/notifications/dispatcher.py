"""Queued delivery of update notifications to Discord webhooks.

queue_notification() is called from refreshes. It filters duplicates against
the durable dedup table and the in-process markers on the StateService, then
hands the notification to a single background worker. The worker delivers to
every enabled webhook of the owning user, persists the dedup key on success
and releases the marker on failure so a later refresh can try again.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from dockwatch.db import AsyncSessionLocal
from dockwatch.exceptions import ValidationError
from dockwatch.models import DiscordWebhook
from dockwatch.services.notifications.base import NotificationService
from dockwatch.services.notifications.dedup import (
    build_dedup_key,
    has_notification_been_sent,
    record_notification_sent,
)
from dockwatch.services.notifications.discord import (
    DiscordNotificationService,
    build_update_embed,
)
from dockwatch.services.settings_service import SettingsService
from dockwatch.services.state_service import StateService
from dockwatch.utils.encryption import decrypt_secret
from dockwatch.utils.security import mask_webhook_url, sanitize_log_message

logger = logging.getLogger(__name__)

MAX_QUEUE_SIZE = 100
SEND_INTERVAL_SECONDS = 0.1


@dataclass
class QueuedNotification:
    """One pending delivery."""

    user_id: Optional[int]
    dedup_key: str
    permanent: bool
    name: str
    payload: dict[str, Any]


class NotificationDispatcher:
    """FIFO notification queue with a single in-process worker."""

    def __init__(
        self,
        state: StateService,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        client: Optional[httpx.AsyncClient] = None,
        service_factory: Optional[Callable[[str], NotificationService]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_queue_size: int = MAX_QUEUE_SIZE,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            state: Shared state (dedup markers, Discord limiter)
            session_factory: Session factory for settings, webhooks and dedup rows
            client: Shared HTTP client for webhook calls
            service_factory: Builds the delivery service for a webhook URL
            sleep: Async sleep between deliveries, injectable for tests
            max_queue_size: Entries beyond this are dropped
        """
        self.state = state
        self._session_factory = session_factory
        self._client = client
        self._service_factory = service_factory or self._discord_service
        self._sleep = sleep
        self._queue: asyncio.Queue[QueuedNotification] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None

    def _discord_service(self, webhook_url: str) -> NotificationService:
        return DiscordNotificationService(
            webhook_url, limiter=self.state.discord_limiter, client=self._client
        )

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def queue_notification(self, image_data: dict[str, Any]) -> bool:
        """Queue an update notification unless it is a duplicate.

        Args:
            image_data: user_id, identity, name, image_name, current_version,
                latest_version, latest_digest and optionally latest_publish_date

        Returns:
            True if the notification was queued
        """
        user_id = image_data.get("user_id")
        identity = image_data.get("identity") or image_data.get("image_name") or image_data.get("name")
        dedup_key, permanent = build_dedup_key(
            user_id,
            identity,
            image_data.get("latest_digest"),
            image_data.get("latest_version"),
        )

        async with self._session_factory() as db:
            if not await SettingsService.get_bool(db, "discord_enabled", default=True):
                logger.debug("[discord] Notifications disabled, not queueing")
                return False
            if await has_notification_been_sent(db, user_id, dedup_key):
                logger.debug(f"[discord] Skipping already delivered notification {dedup_key}")
                return False

        if not await self.state.claim_notification(dedup_key):
            logger.debug(f"[discord] Skipping duplicate notification {dedup_key}")
            return False

        item = QueuedNotification(
            user_id=user_id,
            dedup_key=dedup_key,
            permanent=permanent,
            name=image_data.get("name") or identity,
            payload=build_update_embed(image_data),
        )
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.error(
                f"[discord] Notification queue full ({self._queue.maxsize}), "
                f"dropping notification for {sanitize_log_message(item.name)}"
            )
            await self.state.release_notification(dedup_key)
            return False

        logger.debug(f"[discord] Queued notification for {sanitize_log_message(item.name)}")
        self._ensure_worker()
        return True

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="discord-notifications")

    async def _run(self) -> None:
        while not self._queue.empty():
            item = self._queue.get_nowait()
            try:
                await self._deliver(item)
            except Exception as e:
                # Worker must survive one bad delivery; the marker is rolled back
                logger.error(f"[discord] Error delivering notification for {item.name}: {e}")
                await self.state.release_notification(item.dedup_key)
            finally:
                self._queue.task_done()
            await self._sleep(SEND_INTERVAL_SECONDS)

    async def _enabled_webhooks(self, user_id: Optional[int]) -> list[str]:
        async with self._session_factory() as db:
            query = select(DiscordWebhook).where(DiscordWebhook.enabled.is_(True))
            if user_id is not None:
                query = query.where(DiscordWebhook.user_id == user_id)
            result = await db.execute(query.order_by(DiscordWebhook.id))
            return [decrypt_secret(webhook.webhook_url) for webhook in result.scalars().all()]

    async def _deliver(self, item: QueuedNotification) -> bool:
        """Deliver to every enabled webhook; success if at least one accepted it."""
        webhook_urls = await self._enabled_webhooks(item.user_id)
        if not webhook_urls:
            logger.warning(f"[discord] No enabled webhooks for user {item.user_id}, dropping {item.name}")
            await self.state.release_notification(item.dedup_key)
            return False

        delivered = False
        for webhook_url in webhook_urls:
            try:
                service = self._service_factory(webhook_url)
            except ValidationError as e:
                logger.error(f"[discord] Skipping invalid webhook {mask_webhook_url(webhook_url)}: {e}")
                continue
            async with service:
                if await service.send_payload(item.payload):
                    delivered = True

        if not delivered:
            logger.error(f"[discord] Failed to deliver notification for {sanitize_log_message(item.name)}")
            await self.state.release_notification(item.dedup_key)
            return False

        async with self._session_factory() as db:
            ttl = None
            if not item.permanent:
                hours = await SettingsService.get_int(db, "discord_version_dedup_hours", default=24)
                ttl = timedelta(hours=hours)
            await record_notification_sent(db, item.user_id, item.dedup_key, ttl=ttl)

        await self.state.confirm_notification(
            item.dedup_key, ttl.total_seconds() if ttl is not None else None
        )
        logger.info(f"[discord] Notification sent for {sanitize_log_message(item.name)}")
        return True

    async def join(self) -> None:
        """Wait until every queued notification has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker. Undelivered entries are discarded."""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher(state: StateService) -> NotificationDispatcher:
    """Process-wide dispatcher bound to the given state service."""
    global _dispatcher

    if _dispatcher is None or _dispatcher.state is not state:
        _dispatcher = NotificationDispatcher(state)

    return _dispatcher
