"""Database models for Dockwatch."""

from dockwatch.models.setting import Setting
from dockwatch.models.portainer_instance import PortainerInstance
from dockwatch.models.container_snapshot import ContainerSnapshot
from dockwatch.models.image_version import ImageVersion
from dockwatch.models.discord import DiscordWebhook, DiscordNotificationSent
from dockwatch.models.history import UpgradeHistory
from dockwatch.models.batch_run import BatchRun

__all__ = [
    "Setting",
    "PortainerInstance",
    "ContainerSnapshot",
    "ImageVersion",
    "DiscordWebhook",
    "DiscordNotificationSent",
    "UpgradeHistory",
    "BatchRun",
]
