"""Settings service for database-first configuration."""

import os
import logging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from dockwatch.models import Setting
from typing import Optional, Dict, Any
from dockwatch.utils.encryption import get_encryption_service, is_encryption_configured
from dockwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


class SettingsService:
    """Manage application settings in database."""

    DEFAULTS: Dict[str, Dict[str, Any]] = {
        # Scheduling
        "check_enabled": {
            "value": "true",
            "category": "scheduling",
            "description": "Enable the scheduled forced refresh of all Portainer instances",
        },
        "check_schedule": {
            "value": "0 */6 * * *",  # Every 6 hours
            "category": "scheduling",
            "description": "Cron expression for the scheduled refresh",
        },
        # Portainer
        "portainer_max_concurrency": {
            "value": "5",
            "category": "portainer",
            "description": "Maximum concurrent container checks per Portainer instance",
        },
        "portainer_verify_ssl": {
            "value": "false",
            "category": "portainer",
            "description": "Verify TLS certificates of Portainer instances",
        },
        "portainer_ip_detection_enabled": {
            "value": "false",
            "category": "portainer",
            "description": (
                "Best-effort DNS lookup of the Portainer host when no IP address is configured. "
                "Only used when upgrading the reverse proxy in front of Portainer."
            ),
        },
        # Registries
        "registry_digest_cache_minutes": {
            "value": "30",
            "category": "registries",
            "description": "How long a resolved latest digest is reused before asking the registry again",
        },
        "registry_token_cache_minutes": {
            "value": "5",
            "category": "registries",
            "description": "How long anonymous registry pull tokens are reused",
        },
        "dockerhub_username": {
            "value": "",
            "category": "registries",
            "description": "Docker Hub username (optional, for higher rate limits)",
        },
        "dockerhub_token": {
            "value": "",
            "category": "registries",
            "description": "Docker Hub access token (optional, encrypted)",
            "encrypted": True,
        },
        # Notifications
        "discord_enabled": {
            "value": "true",
            "category": "notifications",
            "description": "Send Discord notifications for newly detected updates",
        },
        "discord_version_dedup_hours": {
            "value": "24",
            "category": "notifications",
            "description": "Hours a version-based notification is suppressed when no digest is known",
        },
        # Upgrades
        "upgrade_ready_timeout_seconds": {
            "value": "120",
            "category": "upgrades",
            "description": "Maximum time to wait for an upgraded container to become ready",
        },
        "upgrade_lock_stale_minutes": {
            "value": "10",
            "category": "upgrades",
            "description": "Upgrade locks older than this are considered abandoned and reclaimed",
        },
        # System
        "timezone": {
            "value": os.getenv("TZ", "UTC"),
            "category": "system",
            "description": "System timezone for displaying times and scheduling tasks",
        },
    }

    @staticmethod
    async def init_defaults(db: AsyncSession) -> None:
        """Initialize default settings if they don't exist."""
        for key, config in SettingsService.DEFAULTS.items():
            result = await db.execute(select(Setting).where(Setting.key == key))
            if not result.scalar_one_or_none():
                db.add(
                    Setting(
                        key=key,
                        value=config["value"],
                        category=config["category"],
                        description=config["description"],
                        encrypted=config.get("encrypted", False),
                    )
                )

        await db.commit()

    @classmethod
    async def get(cls, db: AsyncSession, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get setting value by key.

        Automatically decrypts encrypted settings if encryption is configured.

        Args:
            db: Database session
            key: Setting key
            default: Default value if setting not found

        Returns:
            Decrypted setting value or default
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        if not setting:
            return default

        if setting.encrypted and is_encryption_configured() and setting.value:
            try:
                return get_encryption_service().decrypt(setting.value)
            except ValueError as e:
                logger.error(
                    f"Failed to decrypt setting '{sanitize_log_message(key)}': {sanitize_log_message(str(e))}"
                )
                return None

        return setting.value

    @staticmethod
    async def get_bool(db: AsyncSession, key: str, default: bool = False) -> bool:
        """Get setting as boolean."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    async def get_int(db: AsyncSession, key: str, default: int = 0) -> int:
        """Get setting as integer."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    @classmethod
    async def set(cls, db: AsyncSession, key: str, value: str) -> Setting:
        """Set setting value.

        Automatically encrypts sensitive settings if encryption is configured.

        Args:
            db: Database session
            key: Setting key
            value: Setting value (will be encrypted if marked as encrypted)

        Returns:
            Updated Setting object
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        config = cls.DEFAULTS.get(key, {})
        is_encrypted = config.get("encrypted", False)

        value_to_store = value
        if is_encrypted and is_encryption_configured():
            value_to_store = get_encryption_service().encrypt(value)
        elif is_encrypted:
            logger.warning(
                f"Setting '{key}' is marked as encrypted but DOCKWATCH_ENCRYPTION_KEY is not configured. "
                "Value will be stored in plain text."
            )

        if setting:
            setting.value = value_to_store
            setting.encrypted = is_encrypted and is_encryption_configured()
        else:
            setting = Setting(
                key=key,
                value=value_to_store,
                category=config.get("category", "general"),
                description=config.get("description", ""),
                encrypted=is_encrypted and is_encryption_configured(),
            )
            db.add(setting)

        await db.commit()
        await db.refresh(setting)
        return setting

    @staticmethod
    async def get_all(db: AsyncSession, category: Optional[str] = None) -> list[Setting]:
        """Get all settings, optionally filtered by category."""
        query = select(Setting)
        if category:
            query = query.where(Setting.category == category)
        result = await db.execute(query.order_by(Setting.category, Setting.key))
        return list(result.scalars().all())
