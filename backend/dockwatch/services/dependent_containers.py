"""Containers that share the network namespace of a container being upgraded.

Docker resolves ``NetworkMode: container:<ref>`` to an ID when the dependent
is created and keeps that ID. Once the provider is recreated, restarting the
dependent is not enough: it has to be removed and created again against the
new provider ID. Dependents are removed before the provider goes away, since
Compose would otherwise bring a stopped one back with its stale reference.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List

from dockwatch.exceptions import NotFoundError, RemoteAPIError, UpgradeError
from dockwatch.services.container_config import build_container_config
from dockwatch.services.network_mode import (
    container_identifiers,
    container_name,
    network_mode_of,
    references_container,
)
from dockwatch.services.portainer_client import PortainerClient
from dockwatch.utils.digest import short_id
from dockwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

CLEANUP_DELAY_SECONDS = 5.0
RECREATE_RETRY_DELAY_SECONDS = 2.0


@dataclass
class DependentContainer:
    """A dependent captured before removal."""

    id: str
    name: str
    network_mode: str
    details: Dict[str, Any] = field(repr=False)
    was_running: bool = False


async def find_dependents(
    client: PortainerClient, endpoint_id, provider: Dict[str, Any]
) -> List[DependentContainer]:
    """Containers on the endpoint whose NetworkMode references the provider.

    Args:
        client: Portainer client
        endpoint_id: Endpoint to scan
        provider: Inspection of the container whose namespace is shared

    Returns:
        Dependents with their full inspection, needed to recreate them later
    """
    identifiers = container_identifiers(provider)
    provider_id = provider.get("Id")
    dependents: List[DependentContainer] = []

    for container in await client.list_containers(endpoint_id):
        if container.get("Id") == provider_id:
            continue
        try:
            details = await client.inspect_container(endpoint_id, container["Id"])
        except RemoteAPIError as e:
            logger.debug(f"Could not inspect {short_id(container.get('Id'))} while scanning dependents: {e}")
            continue

        network_mode = network_mode_of(details)
        if not references_container(network_mode, identifiers):
            continue

        name = container_name(details) or container_name(container)
        state = details.get("State") or {}
        dependents.append(DependentContainer(
            id=details.get("Id") or container["Id"],
            name=name,
            network_mode=network_mode,
            details=details,
            was_running=state.get("Status") == "running" or bool(state.get("Running")),
        ))
        logger.info(f"Found network dependent {sanitize_log_message(name)} ({network_mode[:24]})")

    return dependents


async def stop_and_remove_dependents(
    client: PortainerClient,
    endpoint_id,
    dependents: List[DependentContainer],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    cleanup_delay: float = CLEANUP_DELAY_SECONDS,
) -> None:
    """Stop and remove every dependent, then give Docker time to clean up.

    A dependent that cannot be removed here is removed again by name when
    it is recreated.
    """
    if not dependents:
        return

    logger.info(f"Removing {len(dependents)} network dependent(s) before the upgrade")
    for dependent in dependents:
        try:
            await client.stop_container(endpoint_id, dependent.id)
        except NotFoundError:
            continue
        except RemoteAPIError as e:
            logger.warning(f"Could not stop {sanitize_log_message(dependent.name)}: {e}")
        try:
            await client.remove_container(endpoint_id, dependent.id, force=True)
            logger.info(f"Removed dependent {sanitize_log_message(dependent.name)}")
        except NotFoundError:
            pass
        except RemoteAPIError as e:
            logger.warning(f"Could not remove {sanitize_log_message(dependent.name)}: {e}")

    await sleep(cleanup_delay)


async def _remove_leftover(client: PortainerClient, endpoint_id, name: str) -> None:
    """Remove a container still holding the dependent's name."""
    for container in await client.list_containers(endpoint_id):
        if container_name(container) != name:
            continue
        logger.warning(f"Container {sanitize_log_message(name)} still exists, removing it first")
        try:
            await client.remove_container(endpoint_id, container["Id"], force=True)
        except NotFoundError:
            pass


async def _network_mode_after_create(client: PortainerClient, endpoint_id, container_id: str) -> str:
    return network_mode_of(await client.inspect_container(endpoint_id, container_id))


async def recreate_dependent(
    client: PortainerClient,
    endpoint_id,
    dependent: DependentContainer,
    provider_id: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_delay: float = RECREATE_RETRY_DELAY_SECONDS,
) -> str:
    """Create a dependent again, joined to the new provider.

    The created container's NetworkMode is read back; if Docker kept a stale
    reference the container is removed and created once more.

    Returns:
        ID of the recreated dependent

    Raises:
        UpgradeError: NetworkMode still wrong after the retry
    """
    expected = f"container:{provider_id}"
    config, _ = build_container_config(dependent.details, network_mode=expected)

    await _remove_leftover(client, endpoint_id, dependent.name)
    created = await client.create_container(endpoint_id, config, name=dependent.name)
    new_id = created["Id"]

    actual = await _network_mode_after_create(client, endpoint_id, new_id)
    if actual != expected:
        logger.warning(
            f"Recreated {sanitize_log_message(dependent.name)} has NetworkMode {actual!r}, "
            f"expected {expected!r}; recreating once more"
        )
        await client.remove_container(endpoint_id, new_id, force=True)
        await sleep(retry_delay)
        created = await client.create_container(endpoint_id, config, name=dependent.name)
        new_id = created["Id"]
        actual = await _network_mode_after_create(client, endpoint_id, new_id)
        if actual != expected:
            raise UpgradeError(
                f"Dependent {dependent.name} was created with NetworkMode {actual!r} "
                f"instead of {expected!r}"
            )

    if dependent.was_running:
        await client.start_container(endpoint_id, new_id)
    logger.info(
        f"Recreated dependent {sanitize_log_message(dependent.name)} as {short_id(new_id)} "
        f"on {short_id(provider_id)}"
    )
    return new_id


async def reconnect_dependents(
    client: PortainerClient,
    endpoint_id,
    dependents: List[DependentContainer],
    provider_id: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_delay: float = RECREATE_RETRY_DELAY_SECONDS,
) -> tuple[List[str], List[str]]:
    """Recreate every dependent against the new provider.

    A dependent that fails is logged and skipped.

    Returns:
        (reconnected names, failed names)
    """
    reconnected: List[str] = []
    failed: List[str] = []
    for dependent in dependents:
        try:
            await recreate_dependent(client, endpoint_id, dependent, provider_id, sleep, retry_delay)
            reconnected.append(dependent.name)
        except (RemoteAPIError, UpgradeError) as e:
            logger.error(f"Failed to recreate dependent {sanitize_log_message(dependent.name)}: {e}")
            failed.append(dependent.name)
    return reconnected, failed
