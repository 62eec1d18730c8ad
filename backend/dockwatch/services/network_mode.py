"""Detection of containers sharing another container's network namespace.

A container started with ``network_mode: service:<name>`` (Compose) or
``container:<name|id>`` joins the namespace of its provider. Such pairs matter
twice: the dashboard marks them, and the upgrade orchestrator has to recreate
dependents whenever their provider is recreated.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from dockwatch.utils.digest import short_id

logger = logging.getLogger(__name__)

SHARED_NETWORK_PREFIXES = ("service:", "container:")


def container_name(container: Dict[str, Any]) -> str:
    """Name of a container from a listing (Names) or an inspection (Name)."""
    names = container.get("Names")
    if names:
        return names[0].lstrip("/")
    return (container.get("Name") or "").lstrip("/")


def network_mode_of(details: Optional[Dict[str, Any]]) -> str:
    if not details:
        return ""
    return (details.get("HostConfig") or {}).get("NetworkMode") or ""


def is_shared_network_mode(network_mode: Optional[str]) -> bool:
    return bool(network_mode) and network_mode.startswith(SHARED_NETWORK_PREFIXES)


def network_mode_target(network_mode: Optional[str]) -> Optional[str]:
    """Provider name or ID referenced by a shared network mode, else None."""
    if not is_shared_network_mode(network_mode):
        return None
    return network_mode.split(":", 1)[1] or None


def container_uses_network_mode(details: Optional[Dict[str, Any]]) -> bool:
    """True when the inspected container shares another container's network."""
    return is_shared_network_mode(network_mode_of(details))


def container_identifiers(container: Dict[str, Any]) -> Set[str]:
    """Name, full ID and 12-char ID under which a container can be referenced."""
    identifiers = {container_name(container)}
    container_id = container.get("Id") or ""
    if container_id:
        identifiers.add(container_id)
        identifiers.add(short_id(container_id))
    identifiers.discard("")
    return identifiers


def references_container(network_mode: Optional[str], identifiers: Iterable[str]) -> bool:
    """Whether a network mode points at any of the given identifiers.

    IDs may be referenced by any unambiguous prefix, so a full ID target also
    matches the short ID and vice versa.
    """
    target = network_mode_target(network_mode)
    if not target:
        return False
    for identifier in identifiers:
        if target == identifier:
            return True
        if len(target) >= 12 and len(identifier) >= 12 and (
            target.startswith(identifier) or identifier.startswith(target)
        ):
            return True
    return False


@dataclass
class NetworkModeMap:
    """Result of detect_network_modes().

    Attributes:
        by_identifier: name / full ID / short ID -> container listing entry
        dependents: provider identifier (each of its identifiers) -> dependent names
    """

    by_identifier: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    dependents: Dict[str, List[str]] = field(default_factory=dict)

    def provides_network(self, container: Dict[str, Any]) -> bool:
        return any(self.dependents.get(key) for key in container_identifiers(container))

    def dependents_of(self, container: Dict[str, Any]) -> List[str]:
        names: List[str] = []
        for key in container_identifiers(container):
            for name in self.dependents.get(key, []):
                if name not in names:
                    names.append(name)
        return names


def build_identifier_map(containers: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    mapping: Dict[str, Dict[str, Any]] = {}
    for container in containers:
        for identifier in container_identifiers(container):
            mapping[identifier] = container
    return mapping


def detect_network_modes(
    containers: List[Dict[str, Any]],
    details: Dict[str, Dict[str, Any]],
) -> NetworkModeMap:
    """Map providers to the containers sharing their network namespace.

    Args:
        containers: Listing entries for one endpoint
        details: container ID -> inspection, containers missing here are skipped
    """
    result = NetworkModeMap(by_identifier=build_identifier_map(containers))

    for container in containers:
        target = network_mode_target(network_mode_of(details.get(container.get("Id"))))
        if not target:
            continue

        provider = result.by_identifier.get(target)
        if provider is None:
            logger.debug(f"{container_name(container)} references unknown network provider {target}")
            continue

        dependent_name = container_name(container)
        for key in container_identifiers(provider):
            names = result.dependents.setdefault(key, [])
            if dependent_name not in names:
                names.append(dependent_name)

    return result
