"""Build a create-container request from an inspected container.

Used when a container is recreated with a new image, and when a dependent is
recreated against a new network provider. The original Config/HostConfig is
carried over except for fields tied to the old container's identity.
"""

import copy
import logging
from typing import Any, Dict, Optional

from dockwatch.services.network_mode import is_shared_network_mode

logger = logging.getLogger(__name__)

# Docker-managed or per-container values that must not be sent to create
HOST_CONFIG_IDENTITY_FIELDS = (
    "ContainerIDFile",
    "ResolvConfPath",
    "HostnamePath",
    "HostsPath",
    "Runtime",
    "RestartCount",
    "AutoRemove",
)

# Rejected by the engine when the network namespace belongs to another container
SHARED_NETWORK_CONFLICTS = ("PortBindings", "PublishAllPorts")

CARRIED_CONFIG_FIELDS = (
    "Cmd",
    "Entrypoint",
    "Env",
    "Labels",
    "WorkingDir",
    "User",
    "Tty",
    "OpenStdin",
    "StopSignal",
    "Healthcheck",
    "Volumes",
)


def clean_host_config(
    host_config: Optional[Dict[str, Any]], network_mode: Optional[str] = None
) -> tuple[Dict[str, Any], bool]:
    """Copy of HostConfig ready for a create request.

    Args:
        host_config: HostConfig from the inspection
        network_mode: Replacement NetworkMode, e.g. ``container:<new id>``

    Returns:
        (host_config, is_shared_network_mode)
    """
    cleaned = copy.deepcopy(host_config or {})
    for key in HOST_CONFIG_IDENTITY_FIELDS:
        cleaned.pop(key, None)

    if network_mode is not None:
        cleaned["NetworkMode"] = network_mode

    shared = is_shared_network_mode(cleaned.get("NetworkMode"))
    if shared:
        for key in SHARED_NETWORK_CONFLICTS:
            if cleaned.pop(key, None) is not None:
                logger.debug(f"Dropped {key}, it conflicts with NetworkMode {cleaned['NetworkMode']}")

    restart_policy = cleaned.get("RestartPolicy")
    if isinstance(restart_policy, dict) and not restart_policy.get("Name"):
        cleaned["RestartPolicy"] = {"Name": "no"}

    return cleaned, shared


def build_networking_config(details: Dict[str, Any], shared_network_mode: bool) -> Optional[Dict[str, Any]]:
    """EndpointsConfig for the networks the container was attached to.

    Only IPAMConfig, Links and Aliases are kept; the rest of the network
    settings belongs to the old endpoint. None for shared network modes.
    """
    if shared_network_mode:
        return None

    networks = (details.get("NetworkSettings") or {}).get("Networks") or {}
    endpoints: Dict[str, Dict[str, Any]] = {}
    for network_name, network in networks.items():
        if not isinstance(network, dict):
            continue
        endpoint = {
            key: network[key]
            for key in ("IPAMConfig", "Links", "Aliases")
            if network.get(key)
        }
        if endpoint:
            endpoints[network_name] = endpoint

    if not endpoints:
        return None
    return {"EndpointsConfig": endpoints}


def build_container_config(
    details: Dict[str, Any],
    image_name: Optional[str] = None,
    network_mode: Optional[str] = None,
) -> tuple[Dict[str, Any], bool]:
    """Create request equivalent to an inspected container.

    Args:
        details: Container inspection
        image_name: Image for the new container, the original Config.Image when omitted
        network_mode: Replacement NetworkMode

    Returns:
        (config, is_shared_network_mode)
    """
    original = details.get("Config") or {}
    host_config, shared = clean_host_config(details.get("HostConfig"), network_mode)

    config: Dict[str, Any] = {"Image": image_name or original.get("Image")}
    for key in CARRIED_CONFIG_FIELDS:
        value = original.get(key)
        if value not in (None, "", [], {}):
            config[key] = copy.deepcopy(value)

    exposed_ports = original.get("ExposedPorts")
    if exposed_ports and not shared:
        config["ExposedPorts"] = copy.deepcopy(exposed_ports)

    if host_config:
        config["HostConfig"] = host_config

    networking_config = build_networking_config(details, shared)
    if networking_config:
        config["NetworkingConfig"] = networking_config

    return config, shared
