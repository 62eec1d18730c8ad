"""Stop, pull and recreate a running container on a newer image.

One upgrade runs the steps

    INSPECT -> STOP_DEPENDENTS -> STOP -> PULL -> REMOVE -> CREATE -> START
    -> AWAIT_READY -> RECONNECT_DEPENDENTS -> FINALIZE

while holding the (instance, container) upgrade lock. A failing step aborts the
rest, is written to the upgrade history and re-raised as UpgradeError. There is
no rollback: when CREATE or a later step fails the old container is already
gone, which the history row and the error make visible.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.exceptions import (
    ConfigurationError,
    DockwatchError,
    NotFoundError,
    RemoteAPIError,
    UpgradeError,
)
from dockwatch.models import PortainerInstance, UpgradeHistory
from dockwatch.services.container_cache import ContainerCacheService
from dockwatch.services.container_config import build_container_config
from dockwatch.services.dependent_containers import (
    CLEANUP_DELAY_SECONDS,
    DependentContainer,
    find_dependents,
    reconnect_dependents,
    stop_and_remove_dependents,
)
from dockwatch.services.image_update_service import ImageUpdateService, clear_cached_digests
from dockwatch.services.network_mode import container_name, network_mode_of
from dockwatch.services.portainer_client import PortainerClient
from dockwatch.services.portainer_ip import build_ip_url, is_reverse_proxy_image, resolve_portainer_ip
from dockwatch.services.readiness import ReadinessPolicy, wait_for_container_ready
from dockwatch.services.registry_client import parse_image_reference
from dockwatch.services.settings_service import SettingsService
from dockwatch.services.state_service import StateService
from dockwatch.utils.digest import short_id
from dockwatch.utils.security import CONTAINER_ID_PATTERN, sanitize_log_message, validate_container_id

logger = logging.getLogger(__name__)


class UpgradeStep(str, Enum):
    INSPECT = "INSPECT"
    STOP_DEPENDENTS = "STOP_DEPENDENTS"
    STOP = "STOP"
    PULL = "PULL"
    REMOVE = "REMOVE"
    CREATE = "CREATE"
    START = "START"
    AWAIT_READY = "AWAIT_READY"
    RECONNECT_DEPENDENTS = "RECONNECT_DEPENDENTS"
    FINALIZE = "FINALIZE"


STATUS_IN_PROGRESS = "in_progress"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass
class UpgradeResult:
    """Outcome of a successful upgrade."""

    success: bool
    container_id: str
    container_name: str
    new_container_id: Optional[str]
    image: str
    old_digest: Optional[str] = None
    new_digest: Optional[str] = None
    dependents_reconnected: List[str] = field(default_factory=list)
    dependents_failed: List[str] = field(default_factory=list)
    duration_ms: int = 0
    history_id: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def upgrade_target_image(image_name: str) -> str:
    """Image to pull: the same repository and tag, never a pinned digest.

    ``nginx@sha256:...`` becomes ``nginx:latest``; ``app:1.2@sha256:...`` becomes ``app:1.2``.
    """
    name = image_name.split("@", 1)[0]
    if ":" not in name.rsplit("/", 1)[-1]:
        name = f"{name}:latest"
    return name


@dataclass
class _UpgradeContext:
    """Mutable state threaded through the steps of one upgrade."""

    instance: PortainerInstance
    endpoint_id: str
    container_id: str
    image: str
    details: Dict[str, Any] = field(default_factory=dict)
    name: str = ""
    old_digest: Optional[str] = None
    new_container_id: Optional[str] = None
    new_digest: Optional[str] = None
    shared_network_mode: bool = False
    dependents: List[DependentContainer] = field(default_factory=list)
    reconnected: List[str] = field(default_factory=list)
    failed_dependents: List[str] = field(default_factory=list)


class ContainerUpgradeOrchestrator:
    """Runs container upgrades against a Portainer instance."""

    def __init__(
        self,
        db: AsyncSession,
        state: StateService,
        portainer_factory: Optional[Callable[[PortainerInstance], PortainerClient]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        cleanup_delay: float = CLEANUP_DELAY_SECONDS,
        readiness_policy: Optional[ReadinessPolicy] = None,
    ):
        """Initialize the orchestrator.

        Args:
            db: Database session for history, snapshot and version rows
            state: Shared state (upgrade locks, digest cache, Portainer tokens)
            portainer_factory: Builds a Portainer client for an instance
            http_client: Shared HTTP client for the default Portainer clients
            sleep: Async sleep used by polling and cleanup waits
            clock: Monotonic clock used for durations and readiness timing
            cleanup_delay: Wait after removing dependents
            readiness_policy: Readiness thresholds; the timeout comes from settings when omitted
        """
        self.db = db
        self.state = state
        self.http_client = http_client
        self._portainer_factory = portainer_factory or self._default_portainer_client
        self._sleep = sleep
        self._clock = clock
        self.cleanup_delay = cleanup_delay
        self.readiness_policy = readiness_policy
        self._verify_ssl = False

    def _default_portainer_client(self, instance: PortainerInstance) -> PortainerClient:
        return PortainerClient.for_instance(
            instance, self.state, client=self.http_client, verify_ssl=self._verify_ssl
        )

    async def _find_instance(self, instance_url: str, user_id: Optional[int]) -> PortainerInstance:
        query = select(PortainerInstance).where(PortainerInstance.url == instance_url.rstrip("/"))
        if user_id is not None:
            query = query.where(PortainerInstance.user_id == user_id)
        instance = (await self.db.execute(query.order_by(PortainerInstance.id))).scalars().first()
        if instance is None:
            raise NotFoundError(f"Portainer instance {sanitize_log_message(instance_url)} not found")
        return instance

    async def _readiness_policy(self) -> ReadinessPolicy:
        if self.readiness_policy is not None:
            return self.readiness_policy
        timeout = await SettingsService.get_int(self.db, "upgrade_ready_timeout_seconds", 120)
        return ReadinessPolicy(timeout_seconds=float(timeout))

    async def upgrade_single_container(
        self,
        instance_url: str,
        endpoint_id,
        container_id: str,
        image_name: str,
        user_id: Optional[int] = None,
        triggered_by: str = "user",
    ) -> UpgradeResult:
        """Upgrade one container to the newest image for its tag.

        Args:
            instance_url: URL of the Portainer instance
            endpoint_id: Endpoint (environment) the container runs on
            container_id: Container ID, full or 12-char
            image_name: Image the container runs, e.g. ``jc21/nginx-proxy-manager:latest``
            user_id: Owner of the instance
            triggered_by: Recorded in the history ("user" or "batch")

        Raises:
            NotFoundError: Unknown instance
            ValidationError: Malformed container ID
            UpgradeInProgressError: Another upgrade holds the lock for this container
            UpgradeError: A step failed; ``step`` names it
        """
        container_id = validate_container_id(container_id)
        endpoint_id = str(endpoint_id)
        instance = await self._find_instance(instance_url, user_id)

        stale_minutes = await SettingsService.get_int(self.db, "upgrade_lock_stale_minutes", 10)
        self.state.configure(stale_lock_seconds=stale_minutes * 60)
        self._verify_ssl = await SettingsService.get_bool(self.db, "portainer_verify_ssl", False)
        policy = await self._readiness_policy()

        lock_key = short_id(container_id) if CONTAINER_ID_PATTERN.match(container_id) else container_id
        async with self.state.upgrade_locks.hold(instance.id, lock_key, owner=triggered_by):
            return await self._run(instance, endpoint_id, container_id, image_name, triggered_by, policy)

    async def _run(
        self,
        instance: PortainerInstance,
        endpoint_id: str,
        container_id: str,
        image_name: str,
        triggered_by: str,
        policy: ReadinessPolicy,
    ) -> UpgradeResult:
        started = self._clock()
        ctx = _UpgradeContext(
            instance=instance,
            endpoint_id=endpoint_id,
            container_id=container_id,
            image=upgrade_target_image(image_name),
        )

        history = UpgradeHistory(
            user_id=instance.user_id,
            portainer_instance_id=instance.id,
            portainer_url=instance.url,
            endpoint_id=endpoint_id,
            container_id=container_id,
            container_name=container_id[:12],
            old_image=image_name,
            new_image=ctx.image,
            status=STATUS_IN_PROGRESS,
            triggered_by=triggered_by,
        )
        self.db.add(history)
        await self.db.commit()
        history_id = history.id

        client = self._portainer_factory(instance)
        step = UpgradeStep.INSPECT
        try:
            if is_reverse_proxy_image(image_name):
                await self._redirect_to_ip(client, instance)

            step = UpgradeStep.INSPECT
            await self._inspect(client, ctx)

            step = UpgradeStep.STOP_DEPENDENTS
            await stop_and_remove_dependents(
                client, endpoint_id, ctx.dependents, self._sleep, self.cleanup_delay
            )

            step = UpgradeStep.STOP
            logger.info(f"Stopping {sanitize_log_message(ctx.name)} ({short_id(ctx.container_id)})")
            await client.stop_container(endpoint_id, ctx.container_id)
            await client.wait_for_container_stop(endpoint_id, ctx.container_id)

            step = UpgradeStep.PULL
            logger.info(f"Pulling {sanitize_log_message(ctx.image)}")
            await client.pull_image(endpoint_id, ctx.image)

            step = UpgradeStep.REMOVE
            await client.remove_container(endpoint_id, ctx.container_id)

            step = UpgradeStep.CREATE
            config, ctx.shared_network_mode = build_container_config(ctx.details, ctx.image)
            created = await client.create_container(endpoint_id, config, name=ctx.name)
            ctx.new_container_id = created["Id"]
            for warning in created.get("Warnings") or []:
                logger.warning(f"Create {sanitize_log_message(ctx.name)}: {warning}")

            step = UpgradeStep.START
            if ctx.shared_network_mode:
                logger.info(
                    f"{sanitize_log_message(ctx.name)} shares the network of another container, "
                    "starting it once the provider is confirmed"
                )
            else:
                await client.start_container(endpoint_id, ctx.new_container_id)

            step = UpgradeStep.AWAIT_READY
            if not ctx.shared_network_mode:
                await wait_for_container_ready(
                    client, endpoint_id, ctx.new_container_id, ctx.image, policy, self._sleep, self._clock
                )

            step = UpgradeStep.RECONNECT_DEPENDENTS
            if ctx.shared_network_mode:
                await self._join_provider(client, ctx, policy)
            ctx.reconnected, ctx.failed_dependents = await reconnect_dependents(
                client, endpoint_id, ctx.dependents, ctx.new_container_id, self._sleep
            )

            step = UpgradeStep.FINALIZE
            await self._finalize(client, ctx)
        except Exception as e:
            await self._record_failure(history_id, ctx, step, e, started)
            if isinstance(e, UpgradeError):
                e.step = e.step or step.value
                raise
            raise UpgradeError(
                f"Upgrade of {ctx.name or short_id(container_id)} failed at {step.value}: {e}",
                step=step.value,
            ) from e
        finally:
            await client.close()

        duration_ms = int((self._clock() - started) * 1000)
        history = await self.db.get(UpgradeHistory, history_id)
        history.container_name = ctx.name
        history.new_container_id = ctx.new_container_id
        history.old_digest = ctx.old_digest
        history.new_digest = ctx.new_digest
        history.status = STATUS_SUCCESS
        history.duration_ms = duration_ms
        history.completed_at = datetime.now(UTC)
        await self.db.commit()

        logger.info(
            f"Upgrade of {sanitize_log_message(ctx.name)} completed in {duration_ms}ms "
            f"({short_id(ctx.container_id)} -> {short_id(ctx.new_container_id)})"
        )
        return UpgradeResult(
            success=True,
            container_id=ctx.container_id,
            container_name=ctx.name,
            new_container_id=ctx.new_container_id,
            image=ctx.image,
            old_digest=ctx.old_digest,
            new_digest=ctx.new_digest,
            dependents_reconnected=ctx.reconnected,
            dependents_failed=ctx.failed_dependents,
            duration_ms=duration_ms,
            history_id=history_id,
            message=(
                f"Recreated with {len(ctx.failed_dependents)} dependent(s) not reconnected"
                if ctx.failed_dependents else None
            ),
        )

    async def _redirect_to_ip(self, client: PortainerClient, instance: PortainerInstance) -> None:
        """Send every call of this upgrade to the Portainer IP instead of the proxied hostname."""
        detection_enabled = await SettingsService.get_bool(self.db, "portainer_ip_detection_enabled", False)
        ip_address = await resolve_portainer_ip(instance, detection_enabled)
        if ip_address:
            client.use_ip_address(build_ip_url(instance.url, ip_address))

    async def _inspect(self, client: PortainerClient, ctx: _UpgradeContext) -> None:
        ctx.details = await client.inspect_container(ctx.endpoint_id, ctx.container_id)
        ctx.container_id = ctx.details.get("Id") or ctx.container_id
        ctx.name = container_name(ctx.details)
        ctx.old_digest = await self._running_digest(client, ctx.endpoint_id, ctx.details)
        ctx.dependents = await find_dependents(client, ctx.endpoint_id, ctx.details)
        logger.info(
            f"Upgrading {sanitize_log_message(ctx.name)} to {sanitize_log_message(ctx.image)} "
            f"via {client.base_url} ({len(ctx.dependents)} network dependent(s))"
        )

    @staticmethod
    async def _running_digest(client: PortainerClient, endpoint_id: str, details: Dict[str, Any]) -> Optional[str]:
        """Repository digest of the image a container runs, from its image inspection."""
        config = details.get("Config") or {}
        image_id = details.get("Image")
        if not image_id:
            return None
        try:
            image = await client.inspect_image(endpoint_id, image_id)
        except RemoteAPIError as e:
            logger.debug(f"Could not inspect image {short_id(image_id)}: {e}")
            return None
        return ImageUpdateService.resolve_current_digest(
            config.get("Image") or "", config.get("Image"), image.get("RepoDigests")
        )

    async def _join_provider(self, client: PortainerClient, ctx: _UpgradeContext, policy: ReadinessPolicy) -> None:
        """Start a recreated container that shares its provider's network namespace."""
        provider = network_mode_of(ctx.details).split(":", 1)[1]
        provider_details = await client.inspect_container(ctx.endpoint_id, provider)
        if not (provider_details.get("State") or {}).get("Running"):
            raise UpgradeError(f"Network provider {provider} of {ctx.name} is not running")
        await client.start_container(ctx.endpoint_id, ctx.new_container_id)
        await wait_for_container_ready(
            client, ctx.endpoint_id, ctx.new_container_id, ctx.image, policy, self._sleep, self._clock
        )

    async def _finalize(self, client: PortainerClient, ctx: _UpgradeContext) -> None:
        """Invalidate the cached latest digest and store the upgrade as current."""
        new_details = await client.inspect_container(ctx.endpoint_id, ctx.new_container_id)
        ctx.new_digest = await self._running_digest(client, ctx.endpoint_id, new_details)

        clear_cached_digests(self.state, ctx.image)

        try:
            ref = parse_image_reference(ctx.image)
        except ConfigurationError:
            ref = None

        if ref is not None:
            await ContainerCacheService.mark_image_up_to_date(
                self.db, ctx.instance.user_id, ref.repository, ref.tag, ctx.new_digest
            )

        labels = (new_details.get("Config") or {}).get("Labels") or {}
        await ContainerCacheService.update_after_upgrade(
            self.db,
            ctx.instance,
            ctx.endpoint_id,
            ctx.name,
            ctx.new_container_id,
            ctx.new_digest,
            {
                "image_name": ctx.image,
                "image_repo": ref.repository if ref else ctx.image,
                "current_tag": ref.tag if ref else None,
                "latest_tag": ref.tag if ref else None,
                "state": (new_details.get("State") or {}).get("Status"),
                "stack_name": labels.get("com.docker.compose.project")
                or labels.get("com.docker.stack.namespace")
                or "Standalone",
                "uses_network_mode": ctx.shared_network_mode,
                "provides_network": bool(ctx.dependents),
            },
        )

    async def _record_failure(
        self,
        history_id: int,
        ctx: _UpgradeContext,
        step: UpgradeStep,
        error: Exception,
        started: float,
    ) -> None:
        logger.error(
            f"Upgrade of {sanitize_log_message(ctx.name or ctx.container_id)} failed at {step.value}: {error}"
        )
        await self.db.rollback()
        history = await self.db.get(UpgradeHistory, history_id)
        if history is None:
            return
        if ctx.name:
            history.container_name = ctx.name
        history.new_container_id = ctx.new_container_id
        history.old_digest = ctx.old_digest
        history.status = STATUS_FAILED
        history.failed_step = step.value
        history.error_message = str(error)
        history.duration_ms = int((self._clock() - started) * 1000)
        history.completed_at = datetime.now(UTC)
        await self.db.commit()

    async def upgrade_containers(
        self,
        instance_url: str,
        endpoint_id,
        container_ids: List[str],
        image_name: str,
        user_id: Optional[int] = None,
        triggered_by: str = "user",
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Upgrade several containers of one image, one after another.

        A failure is reported and the next container is still upgraded.

        Returns:
            {"results": [UpgradeResult dicts], "errors": [{container_id, error, step}]}
        """
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for container_id in container_ids:
            try:
                result = await self.upgrade_single_container(
                    instance_url, endpoint_id, container_id, image_name, user_id, triggered_by
                )
                results.append(result.to_dict())
            except DockwatchError as e:
                errors.append({
                    "container_id": container_id,
                    "error": str(e),
                    "step": getattr(e, "step", None),
                })
        return {"results": results, "errors": errors}

    @staticmethod
    async def mark_stale_upgrades_failed(db: AsyncSession) -> int:
        """Fail history rows left in progress by a previous process.

        Returns:
            Number of rows updated
        """
        result = await db.execute(
            update(UpgradeHistory)
            .where(UpgradeHistory.status == STATUS_IN_PROGRESS)
            .values(
                status=STATUS_FAILED,
                error_message="Interrupted by application restart",
                completed_at=datetime.now(UTC),
            )
        )
        await db.commit()
        count = result.rowcount or 0
        if count:
            logger.warning(f"Marked {count} interrupted upgrade(s) as failed")
        return count
