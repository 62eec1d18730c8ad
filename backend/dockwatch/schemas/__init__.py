"""Pydantic schemas for API validation."""

from dockwatch.schemas.container import (
    ContainerSnapshotSchema,
    ContainerWithInstance,
    StackGroup,
    InstanceSummary,
    RefreshError,
    ContainerBundle,
    UnusedImageSchema,
    UpgradeRequest,
    UpgradeResultSchema,
    UpgradeFailureDetail,
)
from dockwatch.schemas.history import UpgradeHistorySchema, UpgradeHistoryPage, BatchRunSchema
from dockwatch.schemas.discord import DiscordTestRequest, DiscordTestResponse

__all__ = [
    "ContainerSnapshotSchema",
    "ContainerWithInstance",
    "StackGroup",
    "InstanceSummary",
    "RefreshError",
    "ContainerBundle",
    "UnusedImageSchema",
    "UpgradeRequest",
    "UpgradeResultSchema",
    "UpgradeFailureDetail",
    "UpgradeHistorySchema",
    "UpgradeHistoryPage",
    "BatchRunSchema",
    "DiscordTestRequest",
    "DiscordTestResponse",
]
