"""Reach Portainer by IP while the reverse proxy in front of it is being upgraded.

When the container being upgraded is the proxy that serves Portainer's
hostname, every API call after STOP would fail. The orchestrator switches the
client to an IP-based URL before the first call instead.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

from dockwatch.models import PortainerInstance
from dockwatch.utils.url_validation import is_ip_address, resolve_hostname

logger = logging.getLogger(__name__)

REVERSE_PROXY_IMAGE_PATTERNS = ("nginx-proxy-manager",)
DEFAULT_PORTS = {"https": 9443, "http": 9000}


def is_reverse_proxy_image(image_name: Optional[str]) -> bool:
    """True for images of the reverse proxy that may front Portainer itself."""
    if not image_name:
        return False
    lowered = image_name.lower()
    return any(pattern in lowered for pattern in REVERSE_PROXY_IMAGE_PATTERNS)


def build_ip_url(url: str, ip_address: str) -> str:
    """Swap the host of ``url`` for ``ip_address``, keeping scheme and port.

    Without an explicit port the Portainer defaults are used (9443 for https,
    9000 for http), since the proxy's 443/80 are exactly what is going away.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme or "https"
    port = parsed.port or DEFAULT_PORTS.get(scheme, 9443)
    host = f"[{ip_address}]" if ":" in ip_address else ip_address
    return f"{scheme}://{host}:{port}"


async def resolve_portainer_ip(
    instance: PortainerInstance, detection_enabled: bool = False
) -> Optional[str]:
    """IP address to use for an instance, or None.

    The operator-configured ``ip_address`` always wins. DNS lookup of the
    instance hostname is a best-effort fallback used only when
    ``detection_enabled`` is set; it resolves through the same resolver that
    may be served by the proxy, so it can return the proxy's address.
    """
    if instance.ip_address:
        logger.warning(
            f"Using configured IP address {instance.ip_address} for Portainer instance "
            f'"{instance.name}". If this is incorrect, update the instance settings.'
        )
        return instance.ip_address

    if not detection_enabled:
        logger.warning(
            f"No IP address configured for Portainer instance {instance.url}, "
            "upgrade may fail once the proxy stops"
        )
        return None

    hostname = urlparse(instance.url).hostname
    if not hostname:
        return None
    if is_ip_address(hostname):
        return hostname

    ip_address = await asyncio.to_thread(resolve_hostname, hostname)
    if ip_address:
        logger.info(f"Best-effort DNS lookup resolved {hostname} to {ip_address}")
    else:
        logger.warning(f"Could not resolve {hostname} for the Portainer IP fallback")
    return ip_address
