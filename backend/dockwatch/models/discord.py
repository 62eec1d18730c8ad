"""Discord webhook configuration and notification dedup records."""

from sqlalchemy import Column, String, Integer, DateTime, Boolean, UniqueConstraint
from sqlalchemy.sql import func
from dockwatch.db import Base


class DiscordWebhook(Base):
    """A Discord webhook a user receives update notifications on."""

    __tablename__ = "discord_webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    webhook_url = Column(String, nullable=False)
    name = Column(String, nullable=True)
    server_name = Column(String, nullable=True)
    channel_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<DiscordWebhook(id={self.id}, user_id={self.user_id}, enabled={self.enabled})>"


class DiscordNotificationSent(Base):
    """Delivered notification, used to suppress duplicates across restarts.

    Digest-backed keys never expire (expires_at is NULL). Version-backed
    fallback keys carry an expiry after which the same key may fire again.
    """

    __tablename__ = "discord_notifications_sent"
    __table_args__ = (
        UniqueConstraint("user_id", "dedup_key", name="uq_discord_dedup"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    dedup_key = Column(String, nullable=False)
    notification_type = Column(String, nullable=False, default="container_update")
    sent_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DiscordNotificationSent({self.dedup_key}, expires={self.expires_at})>"
