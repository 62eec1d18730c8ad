"""Container listing with update status, cache-first.

A normal read returns the persisted snapshot and never touches Portainer or a
registry. A forced refresh walks every Portainer instance (or one, when
filtered), inspects each container, checks its image for updates, announces
newly detected updates and finally replaces the stored snapshot in one
transaction:

    LISTING -> INSPECTING -> CHECKING -> MERGING -> NOTIFYING -> PERSISTING

Instances are refreshed concurrently. Within an instance, Portainer and
registry calls share a semaphore sized by ``portainer_max_concurrency``. A
registry 429 aborts the whole refresh; any other per-container failure only
marks that container.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.exceptions import (
    ConfigurationError,
    NotFoundError,
    RateLimitExceededError,
    RemoteAPIError,
)
from dockwatch.models import ContainerSnapshot, PortainerInstance
from dockwatch.schemas.container import (
    ContainerBundle,
    ContainerWithInstance,
    InstanceSummary,
    StackGroup,
    UnusedImageSchema,
)
from dockwatch.services.container_cache import ContainerCacheService, snapshot_identity
from dockwatch.services.image_update_service import ImageUpdateInfo, ImageUpdateService
from dockwatch.services.network_mode import (
    NetworkModeMap,
    container_name,
    container_uses_network_mode,
    detect_network_modes,
)
from dockwatch.services.notifications.dispatcher import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from dockwatch.services.notifications.triggers import should_notify_container_update
from dockwatch.services.portainer_client import PortainerClient
from dockwatch.services.registry_client import PlatformDescriptor, parse_image_reference
from dockwatch.services.settings_service import SettingsService
from dockwatch.services.state_service import StateService
from dockwatch.utils.digest import ensure_digest_prefix, short_digest, short_id, strip_digest_prefix
from dockwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

STANDALONE_STACK = "Standalone"
STACK_LABELS = ("com.docker.compose.project", "com.docker.stack.namespace")


async def gather_or_cancel(aws: Iterable[Awaitable[Any]]) -> List[Any]:
    """Run awaitables concurrently; the first exception cancels the rest and is re-raised."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _image_id_forms(image_id: Optional[str]) -> set[str]:
    stripped = (strip_digest_prefix(image_id) or "").lower()
    if not stripped:
        return set()
    return {stripped, stripped[:12]}


def find_unused_images(
    images: Sequence[Dict[str, Any]], containers: Sequence[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Images of an endpoint that no container (running or not) was created from.

    IDs are compared without the ``sha256:`` prefix, in full and 12-char form.
    """
    used: set[str] = set()
    for container in containers:
        used |= _image_id_forms(container.get("ImageID"))

    unused = []
    for image in images:
        forms = _image_id_forms(image.get("Id"))
        if forms and not forms & used:
            unused.append(image)
    return unused


def count_unused_images(images: Sequence[Dict[str, Any]], containers: Sequence[Dict[str, Any]]) -> int:
    return len(find_unused_images(images, containers))


def stack_name_from_labels(labels: Optional[Dict[str, str]]) -> str:
    for label in STACK_LABELS:
        value = (labels or {}).get(label)
        if value:
            return value
    return STANDALONE_STACK


def _previous_state(snapshot: Optional[ContainerSnapshot]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    return {
        "has_update": bool(snapshot.has_update),
        "latest_digest": snapshot.latest_digest,
        "latest_version": snapshot.latest_version,
        "latest_tag": snapshot.latest_tag,
    }


@dataclass
class InstanceRefresh:
    """Fresh data for one Portainer instance, not yet persisted."""

    instance: PortainerInstance
    rows: List[Dict[str, Any]] = field(default_factory=list)
    endpoint_ids: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    unused_images: int = 0
    failed: bool = False


class ContainerQueryService:
    """Query containers and their update status across Portainer instances."""

    def __init__(
        self,
        db: AsyncSession,
        state: StateService,
        dispatcher: Optional[NotificationDispatcher] = None,
        image_service: Optional[ImageUpdateService] = None,
        portainer_factory: Optional[Callable[[PortainerInstance], PortainerClient]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the query service.

        Args:
            db: Database session, used only outside the concurrent phases
            state: Shared caches, limiters and dedup markers
            dispatcher: Notification queue, the process-wide one when omitted
            image_service: Update checker, built from settings when omitted
            portainer_factory: Builds a Portainer client for an instance
            http_client: Shared HTTP client for Portainer and registry calls
        """
        self.db = db
        self.state = state
        self.dispatcher = dispatcher or get_notification_dispatcher(state)
        self.image_service = image_service
        self.http_client = http_client
        self._portainer_factory = portainer_factory or self._default_portainer_client
        self._verify_ssl = False

    def _default_portainer_client(self, instance: PortainerInstance) -> PortainerClient:
        return PortainerClient.for_instance(
            instance, self.state, client=self.http_client, verify_ssl=self._verify_ssl
        )

    @staticmethod
    async def load_instances(db: AsyncSession, user_id: Optional[int] = None) -> List[PortainerInstance]:
        query = select(PortainerInstance)
        if user_id is not None:
            query = query.where(PortainerInstance.user_id == user_id)
        result = await db.execute(query.order_by(PortainerInstance.display_order, PortainerInstance.id))
        return list(result.scalars().all())

    @staticmethod
    def _select_instances(
        instances: List[PortainerInstance], filter_instance_url: Optional[str]
    ) -> List[PortainerInstance]:
        if not filter_instance_url:
            return instances
        wanted = filter_instance_url.rstrip("/")
        selected = [instance for instance in instances if instance.url.rstrip("/") == wanted]
        if not selected:
            raise NotFoundError(f"Portainer instance {sanitize_log_message(filter_instance_url)} not found")
        return selected

    async def get_all_containers_with_updates(
        self,
        force_refresh: bool = False,
        filter_instance_url: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Containers with update status, grouped by stack.

        Args:
            force_refresh: Contact Portainer and the registries instead of
                returning the stored snapshot
            filter_instance_url: Limit the refresh (or the read) to one instance;
                a filtered refresh still returns the other instances from cache
            user_id: Only instances owned by this user

        Returns:
            Bundle dict (see ContainerBundle)

        Raises:
            NotFoundError: filter_instance_url matches no instance
            RateLimitExceededError: A registry answered 429 during the refresh
        """
        instances = await self.load_instances(self.db, user_id)
        targets = self._select_instances(instances, filter_instance_url)

        if not force_refresh:
            snapshots = await ContainerCacheService.load_snapshots(
                self.db, user_id, [instance.id for instance in targets]
            )
            return self.build_bundle(snapshots, targets)

        errors = await self.refresh(targets)
        snapshots = await ContainerCacheService.load_snapshots(
            self.db, user_id, [instance.id for instance in instances]
        )
        return self.build_bundle(snapshots, instances, errors)

    async def refresh(self, instances: List[PortainerInstance]) -> List[Dict[str, Any]]:
        """Forced refresh of the given instances, persisted in one commit.

        Returns:
            Per-container and per-instance errors; empty when everything was checked
        """
        if not instances:
            return []

        previous = ContainerCacheService.index_by_identity(
            await ContainerCacheService.load_snapshots(
                self.db, instance_ids=[instance.id for instance in instances]
            )
        )
        concurrency = max(1, await SettingsService.get_int(self.db, "portainer_max_concurrency", 5))
        self._verify_ssl = await SettingsService.get_bool(self.db, "portainer_verify_ssl", False)

        image_service = self.image_service
        owns_image_service = image_service is None
        if image_service is None:
            image_service = await ImageUpdateService.create(self.db, self.state, client=self.http_client)

        logger.info(f"Refreshing {len(instances)} Portainer instance(s) (concurrency {concurrency})")
        try:
            refreshes: List[InstanceRefresh] = await gather_or_cancel(
                self._refresh_instance(instance, concurrency, image_service) for instance in instances
            )
        except RateLimitExceededError as e:
            logger.error(f"Registry rate limit hit, aborting refresh: {e}")
            raise
        finally:
            if owns_image_service:
                await image_service.close()

        await self._notify(refreshes, previous)
        await self._persist(refreshes)

        errors = [error for refresh in refreshes for error in refresh.errors]
        checked = sum(len(refresh.rows) for refresh in refreshes)
        updates = sum(1 for refresh in refreshes for row in refresh.rows if row["has_update"])
        logger.info(f"Refresh complete: {checked} containers, {updates} with updates, {len(errors)} errors")
        return errors

    async def _refresh_instance(
        self,
        instance: PortainerInstance,
        concurrency: int,
        image_service: ImageUpdateService,
    ) -> InstanceRefresh:
        result = InstanceRefresh(instance=instance)
        semaphore = asyncio.Semaphore(concurrency)
        client = self._portainer_factory(instance)
        try:
            try:
                endpoints = await client.list_endpoints()
            except RateLimitExceededError:
                raise
            except (RemoteAPIError, ConfigurationError) as e:
                logger.error(f"Failed to list endpoints of {instance.url}: {e}")
                result.failed = True
                result.errors.append({"portainer_url": instance.url, "error": str(e)})
                return result

            for endpoint in endpoints:
                endpoint_id = str(endpoint.get("Id"))
                try:
                    rows, unused = await self._refresh_endpoint(
                        client, instance, endpoint_id, semaphore, image_service, result.errors
                    )
                except RateLimitExceededError:
                    raise
                except RemoteAPIError as e:
                    # Stored rows of this endpoint are kept rather than deleted
                    logger.error(f"Failed to refresh endpoint {endpoint_id} of {instance.url}: {e}")
                    result.errors.append({"portainer_url": instance.url, "error": str(e)})
                    continue
                result.endpoint_ids.append(endpoint_id)
                result.rows.extend(rows)
                result.unused_images += unused
        finally:
            await client.close()

        return result

    async def _refresh_endpoint(
        self,
        client: PortainerClient,
        instance: PortainerInstance,
        endpoint_id: str,
        semaphore: asyncio.Semaphore,
        image_service: ImageUpdateService,
        errors: List[Dict[str, Any]],
    ) -> tuple[List[Dict[str, Any]], int]:
        containers = await client.list_containers(endpoint_id)

        unused = 0
        try:
            images = await client.list_images(endpoint_id)
            unused = count_unused_images(images, containers)
        except RemoteAPIError as e:
            logger.warning(f"Could not list images on endpoint {endpoint_id} of {instance.url}: {e}")

        # INSPECTING
        async def inspect(container: Dict[str, Any]) -> tuple[Optional[Dict[str, Any]], Optional[str], bool]:
            container_id = container.get("Id", "")
            async with semaphore:
                try:
                    return await client.inspect_container(endpoint_id, container_id), None, False
                except NotFoundError:
                    logger.info(f"Container {short_id(container_id)} vanished during refresh")
                    return None, None, True
                except RemoteAPIError as e:
                    logger.warning(f"Failed to inspect {sanitize_log_message(container_name(container))}: {e}")
                    return None, str(e), False

        inspections = await gather_or_cancel(inspect(container) for container in containers)

        present: List[tuple[Dict[str, Any], Optional[Dict[str, Any]], Optional[str]]] = []
        details_by_id: Dict[str, Dict[str, Any]] = {}
        for container, (details, error, vanished) in zip(containers, inspections):
            if vanished:
                continue
            present.append((container, details, error))
            if details is not None:
                details_by_id[container.get("Id")] = details

        image_ids = {
            (details or {}).get("Image") or container.get("ImageID")
            for container, details, _ in present
        }
        image_ids.discard(None)
        image_ids.discard("")

        async def inspect_image(image_id: str) -> tuple[str, Optional[Dict[str, Any]]]:
            async with semaphore:
                try:
                    return image_id, await client.inspect_image(endpoint_id, image_id)
                except RemoteAPIError as e:
                    logger.debug(f"Could not inspect image {short_id(image_id)}: {e}")
                    return image_id, None

        image_details = dict(await gather_or_cancel(inspect_image(image_id) for image_id in image_ids))
        network_map = detect_network_modes([container for container, _, _ in present], details_by_id)

        # CHECKING
        async def check(container: Dict[str, Any], details: Optional[Dict[str, Any]], error: Optional[str]) -> Dict[str, Any]:
            image_id = (details or {}).get("Image") or container.get("ImageID")
            return await self._check_container(
                instance, endpoint_id, container, details, image_details.get(image_id),
                network_map, semaphore, image_service, error,
            )

        rows = await gather_or_cancel(check(*item) for item in present)
        for row in rows:
            if row["check_error"]:
                errors.append({
                    "portainer_url": instance.url,
                    "container_name": row["container_name"],
                    "error": row["check_error"],
                })
        return rows, unused

    async def _check_container(
        self,
        instance: PortainerInstance,
        endpoint_id: str,
        container: Dict[str, Any],
        details: Optional[Dict[str, Any]],
        image_details: Optional[Dict[str, Any]],
        network_map: NetworkModeMap,
        semaphore: asyncio.Semaphore,
        image_service: ImageUpdateService,
        inspect_error: Optional[str] = None,
    ) -> Dict[str, Any]:
        config = (details or {}).get("Config") or {}
        image_name = config.get("Image") or container.get("Image") or ""
        current_digest = ImageUpdateService.resolve_current_digest(
            image_name, config.get("Image"), (image_details or {}).get("RepoDigests")
        )
        platform = PlatformDescriptor.from_image_inspect(image_details)

        async with semaphore:
            if inspect_error is not None:
                info = await self._unchecked_info(image_service, image_name, current_digest, inspect_error)
            else:
                info = await image_service.check_image_update(image_name, current_digest, platform)

        state = ((details or {}).get("State") or {}).get("Status") or container.get("State")
        return {
            "endpoint_id": endpoint_id,
            "container_id": container.get("Id") or (details or {}).get("Id"),
            "container_name": container_name(container) or container_name(details or {}),
            "image_name": image_name,
            "image_repo": info.image_repo,
            "registry": info.registry,
            "current_digest": info.current_digest_full,
            "current_tag": info.current_tag,
            "latest_digest": info.latest_digest_full,
            "latest_tag": info.latest_tag,
            "latest_version": info.latest_version,
            "latest_publish_date": info.latest_publish_date,
            "has_update": info.has_update,
            "exists_in_docker_hub": info.exists_in_docker_hub,
            "check_error": info.error,
            "stack_name": stack_name_from_labels(config.get("Labels") or container.get("Labels")),
            "uses_network_mode": container_uses_network_mode(details),
            "provides_network": network_map.provides_network(container),
            "state": state,
            "status": container.get("Status"),
            "image_created_date": (image_details or {}).get("Created"),
        }

    @staticmethod
    async def _unchecked_info(
        image_service: ImageUpdateService,
        image_name: str,
        current_digest: Optional[str],
        error: str,
    ) -> ImageUpdateInfo:
        """Conservative result for a container whose inspection failed."""
        try:
            ref = parse_image_reference(image_name)
        except ConfigurationError:
            ref = None
        info = ImageUpdateInfo(
            image_name=image_name,
            image_repo=ref.repository if ref else image_name,
            registry=ref.registry if ref else "",
            current_tag=ref.tag if ref else None,
            current_digest=short_digest(current_digest),
            current_digest_full=ensure_digest_prefix(current_digest),
            latest_tag=ref.tag if ref else None,
            error=error,
        )
        if ref is not None and ref.is_docker_hub:
            info.exists_in_docker_hub = await image_service.registry.image_exists(image_name)
        return info

    async def _notify(self, refreshes: List[InstanceRefresh], previous: Dict[str, ContainerSnapshot]) -> int:
        """Queue notifications for updates that are new since the last refresh."""
        queued = 0
        for refresh in refreshes:
            instance = refresh.instance
            for row in refresh.rows:
                identity = snapshot_identity(row["container_name"], instance.url, row["endpoint_id"])
                if not should_notify_container_update(row, _previous_state(previous.get(identity))):
                    continue
                image_data = {
                    "user_id": instance.user_id,
                    "identity": f"{row['registry']}/{row['image_repo']}:{row['current_tag']}",
                    "name": row["container_name"],
                    "image_name": row["image_name"],
                    "current_version": row["current_tag"],
                    "latest_version": row["latest_version"] or row["latest_tag"],
                    "latest_digest": row["latest_digest"],
                    "latest_publish_date": row["latest_publish_date"],
                }
                try:
                    if await self.dispatcher.queue_notification(image_data):
                        queued += 1
                except Exception as e:
                    logger.error(f"Failed to queue notification for {sanitize_log_message(row['container_name'])}: {e}")
        if queued:
            logger.info(f"Queued {queued} update notification(s)")
        return queued

    async def _persist(self, refreshes: List[InstanceRefresh]) -> None:
        """Replace stored snapshots and image versions, then commit once."""
        versions: Dict[tuple[int, str, str], Dict[str, Any]] = {}
        for refresh in refreshes:
            if refresh.failed:
                continue
            instance = refresh.instance
            await ContainerCacheService.replace_instance_snapshots(
                self.db, instance, refresh.rows, refresh.endpoint_ids
            )
            self.state.unused_image_counts[instance.id] = refresh.unused_images

            for row in refresh.rows:
                if row["check_error"] or not row["current_tag"]:
                    continue
                versions[(instance.user_id, row["image_repo"], row["current_tag"])] = {
                    "registry_host": row["registry"],
                    "latest_digest": row["latest_digest"],
                    "latest_tag": row["latest_tag"],
                    "latest_version": row["latest_version"],
                    "latest_publish_date": row["latest_publish_date"],
                    "has_update": row["has_update"],
                    "exists_in_docker_hub": row["exists_in_docker_hub"],
                }

        for (user_id, image_repo, tag), values in versions.items():
            await ContainerCacheService.upsert_image_version(self.db, user_id, image_repo, tag, values)

        await self.db.commit()

    def build_bundle(
        self,
        snapshots: List[ContainerSnapshot],
        instances: List[PortainerInstance],
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Group snapshots by stack and summarize them per instance."""
        names = {instance.id: instance.name for instance in instances}
        containers = []
        for snapshot in snapshots:
            item = ContainerWithInstance.model_validate(snapshot)
            item.portainer_name = names.get(snapshot.portainer_instance_id)
            containers.append(item)

        stacks: Dict[str, List[ContainerWithInstance]] = {}
        for item in containers:
            stacks.setdefault(item.stack_name or STANDALONE_STACK, []).append(item)
        ordered = sorted(stacks, key=lambda name: (name == STANDALONE_STACK, name.lower()))

        summaries = []
        for instance in instances:
            own = [item for item in containers if item.portainer_instance_id == instance.id]
            with_updates = sum(1 for item in own if item.has_update)
            summaries.append(InstanceSummary(
                id=instance.id,
                name=instance.name,
                url=instance.url,
                containers=len(own),
                with_updates=with_updates,
                up_to_date=len(own) - with_updates,
            ))

        bundle = ContainerBundle(
            stacks=[StackGroup(name=name, containers=stacks[name]) for name in ordered],
            containers=containers,
            portainer_instances=summaries,
            unused_images_count=sum(self.state.unused_image_counts.get(instance.id, 0) for instance in instances),
            partial=bool(errors),
            errors=errors or [],
        )
        return bundle.model_dump(mode="json")

    async def get_unused_images(self, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Images no container uses, across every instance of the user.

        Instances are queried concurrently; an instance or endpoint that fails is
        logged and left out.
        """
        instances = await self.load_instances(self.db, user_id)
        self._verify_ssl = await SettingsService.get_bool(self.db, "portainer_verify_ssl", False)

        async def for_instance(instance: PortainerInstance) -> List[Dict[str, Any]]:
            found: List[Dict[str, Any]] = []
            client = self._portainer_factory(instance)
            try:
                endpoints = await client.list_endpoints()
                for endpoint in endpoints:
                    endpoint_id = str(endpoint.get("Id"))
                    try:
                        containers = await client.list_containers(endpoint_id)
                        images = await client.list_images(endpoint_id)
                    except RemoteAPIError as e:
                        logger.warning(f"Skipping endpoint {endpoint_id} of {instance.url}: {e}")
                        continue
                    for image in find_unused_images(images, containers):
                        found.append(UnusedImageSchema(
                            id=image.get("Id", ""),
                            repo_tags=image.get("RepoTags") or [],
                            size=image.get("Size") or 0,
                            created=image.get("Created"),
                            portainer_url=instance.url,
                            endpoint_id=endpoint_id,
                            portainer_name=instance.name,
                        ).model_dump())
            except (RemoteAPIError, ConfigurationError) as e:
                logger.error(f"Failed to list unused images of {instance.url}: {e}")
            finally:
                await client.close()
            return found

        per_instance = await gather_or_cancel(for_instance(instance) for instance in instances)
        return [image for images in per_instance for image in images]
