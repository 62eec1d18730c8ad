"""Durable dedup records for update notifications.

A key built from a content digest is permanent: once delivered it never fires
again, even after a restart. Keys built from a version string (no digest
known) expire so a re-tagged release can be announced later.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.models import DiscordNotificationSent
from dockwatch.utils.digest import normalize_digest

logger = logging.getLogger(__name__)

CONTAINER_UPDATE = "container_update"


def build_dedup_key(
    user_id: Optional[int],
    identity: str,
    latest_digest: Optional[str] = None,
    latest_version: Optional[str] = None,
) -> tuple[str, bool]:
    """Deterministic dedup key for one logical update.

    Args:
        user_id: Owner of the notification
        identity: Image (or container) identity the update belongs to
        latest_digest: Digest of the newest release, any casing or prefix
        latest_version: Fallback when no digest is known

    Returns:
        (key, permanent) where permanent is True for digest-based keys
    """
    owner = user_id if user_id is not None else 0
    digest = normalize_digest(latest_digest)
    if digest:
        return f"{owner}:{identity}:digest:{digest}", True
    return f"{owner}:{identity}:version:{latest_version or 'unknown'}", False


async def has_notification_been_sent(db: AsyncSession, user_id: Optional[int], dedup_key: str) -> bool:
    """True when a non-expired record exists for the key."""
    now = datetime.now(UTC)
    result = await db.execute(
        select(DiscordNotificationSent.id).where(
            DiscordNotificationSent.user_id == (user_id or 0),
            DiscordNotificationSent.dedup_key == dedup_key,
            or_(
                DiscordNotificationSent.expires_at.is_(None),
                DiscordNotificationSent.expires_at > now,
            ),
        )
    )
    return result.first() is not None


async def record_notification_sent(
    db: AsyncSession,
    user_id: Optional[int],
    dedup_key: str,
    ttl: Optional[timedelta] = None,
    notification_type: str = CONTAINER_UPDATE,
) -> DiscordNotificationSent:
    """Persist a delivered key. ttl None means permanent. Commits."""
    now = datetime.now(UTC)
    result = await db.execute(
        select(DiscordNotificationSent).where(
            DiscordNotificationSent.user_id == (user_id or 0),
            DiscordNotificationSent.dedup_key == dedup_key,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        record = DiscordNotificationSent(
            user_id=user_id or 0,
            dedup_key=dedup_key,
            notification_type=notification_type,
        )
        db.add(record)

    record.sent_at = now
    record.expires_at = now + ttl if ttl is not None else None
    await db.commit()
    return record
