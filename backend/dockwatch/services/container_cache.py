"""Persistence of container snapshots and image version rows."""

import logging
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.models import ContainerSnapshot, ImageVersion, PortainerInstance

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "container_id",
    "container_name",
    "image_name",
    "image_repo",
    "current_digest",
    "current_tag",
    "latest_digest",
    "latest_tag",
    "latest_version",
    "latest_publish_date",
    "has_update",
    "exists_in_docker_hub",
    "check_error",
    "stack_name",
    "uses_network_mode",
    "provides_network",
    "state",
    "status",
    "image_created_date",
)


def snapshot_identity(container_name: str, portainer_url: str, endpoint_id: Any) -> str:
    """Identity of a logical container; survives recreation with a new ID."""
    return f"{container_name}-{portainer_url}-{endpoint_id}"


class ContainerCacheService:
    """Read and write the persisted container snapshot."""

    @staticmethod
    async def load_snapshots(
        db: AsyncSession,
        user_id: Optional[int] = None,
        instance_ids: Optional[Iterable[int]] = None,
    ) -> List[ContainerSnapshot]:
        """Load persisted snapshots.

        Args:
            db: Database session
            user_id: Only rows of this user
            instance_ids: Only rows of these Portainer instances

        Returns:
            Snapshots ordered by instance and container name
        """
        query = select(ContainerSnapshot)
        if user_id is not None:
            query = query.where(ContainerSnapshot.user_id == user_id)
        if instance_ids is not None:
            query = query.where(ContainerSnapshot.portainer_instance_id.in_(list(instance_ids)))
        result = await db.execute(
            query.order_by(ContainerSnapshot.portainer_instance_id, ContainerSnapshot.container_name)
        )
        return list(result.scalars().all())

    @staticmethod
    def index_by_identity(snapshots: Iterable[ContainerSnapshot]) -> Dict[str, ContainerSnapshot]:
        return {snapshot.identity: snapshot for snapshot in snapshots}

    @staticmethod
    async def replace_instance_snapshots(
        db: AsyncSession,
        instance: PortainerInstance,
        rows: List[Dict[str, Any]],
        endpoint_ids: Optional[Iterable[Any]] = None,
    ) -> tuple[int, int]:
        """Make the instance's stored snapshot equal to a fresh listing.

        Rows are matched by identity (name, URL, endpoint), so an upgraded
        container updates its existing row with the new container ID. Stored
        rows with no counterpart are deleted. Does not commit.

        Args:
            db: Database session
            instance: Portainer instance the rows belong to
            rows: Fresh snapshot dicts (SNAPSHOT_FIELDS plus endpoint_id)
            endpoint_ids: Endpoints that were listed successfully; stored rows of
                other endpoints are kept. None means every endpoint was listed.

        Returns:
            (upserted, deleted) counts
        """
        existing = await ContainerCacheService.load_snapshots(db, instance_ids=[instance.id])
        listed_endpoints = None if endpoint_ids is None else {str(e) for e in endpoint_ids}
        fresh = {
            snapshot_identity(row["container_name"], instance.url, row["endpoint_id"]): row
            for row in rows
        }

        kept: Dict[str, ContainerSnapshot] = {}
        deleted = 0
        for snapshot in existing:
            if listed_endpoints is not None and str(snapshot.endpoint_id) not in listed_endpoints:
                continue
            if snapshot.identity in fresh and snapshot.identity not in kept:
                kept[snapshot.identity] = snapshot
            else:
                await db.delete(snapshot)
                deleted += 1
        # Deletes first: a recreated container may reuse a freed (instance, id) pair
        await db.flush()

        now = datetime.now(UTC)
        for identity, row in fresh.items():
            snapshot = kept.get(identity)
            if snapshot is None:
                snapshot = ContainerSnapshot(
                    user_id=instance.user_id,
                    portainer_instance_id=instance.id,
                    portainer_url=instance.url,
                    endpoint_id=str(row["endpoint_id"]),
                )
                db.add(snapshot)
            for field in SNAPSHOT_FIELDS:
                if field in row:
                    setattr(snapshot, field, row[field])
            snapshot.last_seen_at = now

        if deleted:
            logger.info(f"Removed {deleted} vanished container(s) from snapshot of {instance.url}")
        return len(fresh), deleted

    @staticmethod
    async def update_after_upgrade(
        db: AsyncSession,
        instance: PortainerInstance,
        endpoint_id: Any,
        container_name: str,
        new_container_id: str,
        new_digest: Optional[str],
        container_data: Optional[Dict[str, Any]] = None,
    ) -> ContainerSnapshot:
        """Record a finished upgrade so the next read shows it as current.

        The new digest is stored as both current and latest digest and the
        pending update is cleared. Commits.
        """
        container_name = container_name.lstrip("/")
        container_data = container_data or {}
        result = await db.execute(
            select(ContainerSnapshot).where(
                ContainerSnapshot.portainer_instance_id == instance.id,
                ContainerSnapshot.container_name == container_name,
                ContainerSnapshot.endpoint_id == str(endpoint_id),
            )
        )
        snapshots = list(result.scalars().all())
        snapshot = snapshots[0] if snapshots else None
        for duplicate in snapshots[1:]:
            await db.delete(duplicate)

        if snapshot is None:
            snapshot = ContainerSnapshot(
                user_id=instance.user_id,
                portainer_instance_id=instance.id,
                portainer_url=instance.url,
                endpoint_id=str(endpoint_id),
                container_name=container_name,
                image_name=container_data.get("image_name", ""),
                image_repo=container_data.get("image_repo", ""),
            )
            db.add(snapshot)

        for field in SNAPSHOT_FIELDS:
            if field in container_data and field not in ("container_id", "container_name"):
                setattr(snapshot, field, container_data[field])

        snapshot.container_id = new_container_id
        snapshot.current_digest = new_digest
        snapshot.latest_digest = new_digest
        snapshot.has_update = False
        snapshot.check_error = None
        snapshot.last_seen_at = datetime.now(UTC)

        await db.commit()
        await db.refresh(snapshot)
        logger.info(f"Updated cache after upgrade of {container_name} ({new_container_id[:12]})")
        return snapshot

    @staticmethod
    async def upsert_image_version(
        db: AsyncSession,
        user_id: int,
        image_repo: str,
        tag: str,
        values: Dict[str, Any],
    ) -> ImageVersion:
        """Insert or update the version row for (user, repository, tag). Does not commit."""
        result = await db.execute(
            select(ImageVersion).where(
                ImageVersion.user_id == user_id,
                ImageVersion.image_repo == image_repo,
                ImageVersion.current_tag == tag,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = ImageVersion(user_id=user_id, image_repo=image_repo, current_tag=tag)
            db.add(row)

        for key, value in values.items():
            if hasattr(row, key):
                setattr(row, key, value)
        row.last_checked = datetime.now(UTC)
        return row

    @staticmethod
    async def get_image_version(
        db: AsyncSession, user_id: int, image_repo: str, tag: str
    ) -> Optional[ImageVersion]:
        result = await db.execute(
            select(ImageVersion).where(
                ImageVersion.user_id == user_id,
                ImageVersion.image_repo == image_repo,
                ImageVersion.current_tag == tag,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_image_up_to_date(
        db: AsyncSession, user_id: int, image_repo: str, tag: str, digest: Optional[str]
    ) -> None:
        """Clear the pending update on a version row after an upgrade. Does not commit."""
        row = await ContainerCacheService.get_image_version(db, user_id, image_repo, tag)
        if row is None:
            return
        row.has_update = False
        if digest:
            row.latest_digest = digest
