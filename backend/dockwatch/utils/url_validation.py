"""URL validation for user-supplied endpoints.

Webhook URLs are untrusted input and are validated before any network call:
they must match the Discord webhook shape and must not point at private or
loopback addresses (SSRF protection). Portainer URLs are operator-supplied and
usually live on a private network, so only their shape is checked.
"""

import ipaddress
import re
import socket
from urllib.parse import ParseResult, urlparse

from dockwatch.exceptions import SSRFProtectionError, ValidationError

# Private IP ranges (RFC 1918, RFC 4193, and other reserved ranges)
PRIVATE_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local (cloud metadata: 169.254.169.254)
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # Shared address space (CGN)
]

LOCALHOST_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
}

DISCORD_WEBHOOK_PATTERN = re.compile(
    r"^https://(discord\.com|discordapp\.com)/api/webhooks/\d+/[A-Za-z0-9_-]+$"
)


def is_private_ip(ip_address: str) -> bool:
    """Check if an IP address is private, loopback, or link-local.

    Raises:
        ValueError: If ip_address is not a valid IP address
    """
    try:
        ip_obj = ipaddress.ip_address(ip_address)
    except ValueError:
        raise ValueError(f"Invalid IP address: {ip_address}")

    if any(ip_obj in network for network in PRIVATE_IP_RANGES):
        return True

    # IPv4-mapped IPv6 addresses, e.g. ::ffff:127.0.0.1
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped:
        return is_private_ip(str(ip_obj.ipv4_mapped))

    return False


def is_ip_address(host: str) -> bool:
    """Return True when host is a literal IPv4/IPv6 address."""
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def resolve_hostname(hostname: str) -> str | None:
    """Resolve a hostname to its first IP address, or None when resolution fails."""
    try:
        addr_info = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
        if addr_info:
            return str(addr_info[0][4][0])
    except (socket.gaierror, socket.herror, OSError):
        return None
    return None


def validate_url_for_ssrf(
    url: str,
    allowed_schemes: list[str] | None = None,
    block_private_ips: bool = True,
    resolve_dns: bool = True,
) -> ParseResult:
    """Validate a URL against SSRF protection policies.

    Args:
        url: The URL to validate
        allowed_schemes: List of allowed URL schemes (default: ["http", "https"])
        block_private_ips: If True, block private/internal IP addresses
        resolve_dns: If True, resolve hostnames to check for DNS rebinding

    Returns:
        Parsed URL object if validation passes

    Raises:
        SSRFProtectionError: If URL fails any validation check
        ValidationError: If URL is malformed
    """
    if not url:
        raise ValidationError("URL cannot be empty")

    if allowed_schemes is None:
        allowed_schemes = ["http", "https"]

    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise ValidationError(f"Invalid URL format: {e}")

    if parsed.scheme not in allowed_schemes:
        raise SSRFProtectionError(
            f"URL scheme '{parsed.scheme}' not allowed. "
            f"Allowed schemes: {', '.join(allowed_schemes)}"
        )

    hostname = parsed.hostname
    if not hostname:
        raise ValidationError("URL must include a hostname")

    try:
        hostname_ascii = hostname.encode("idna").decode("ascii").lower()
    except UnicodeError:
        raise ValidationError(f"Invalid hostname: {hostname}")

    if not block_private_ips:
        return parsed

    if hostname_ascii in LOCALHOST_HOSTNAMES:
        raise SSRFProtectionError(f"Blocked private/internal hostname: {hostname_ascii}")

    if is_ip_address(hostname_ascii):
        if is_private_ip(hostname_ascii.strip("[]")):
            raise SSRFProtectionError(f"Blocked private IP address: {hostname_ascii}")
        return parsed

    if resolve_dns:
        resolved_ip = resolve_hostname(hostname_ascii)
        if resolved_ip and is_private_ip(resolved_ip):
            raise SSRFProtectionError(
                f"Hostname '{hostname_ascii}' resolves to private IP: {resolved_ip}"
            )

    return parsed


def validate_discord_webhook_url(url: str, resolve_dns: bool = False) -> str:
    """Validate a Discord webhook URL.

    Returns:
        The URL with surrounding whitespace removed

    Raises:
        ValidationError: If the URL is not a Discord webhook URL
        SSRFProtectionError: If the host resolves to a private address
    """
    candidate = (url or "").strip()
    if not DISCORD_WEBHOOK_PATTERN.match(candidate):
        raise ValidationError(
            "Invalid Discord webhook URL. Expected "
            "https://discord.com/api/webhooks/<id>/<token>"
        )
    validate_url_for_ssrf(
        candidate,
        allowed_schemes=["https"],
        block_private_ips=True,
        resolve_dns=resolve_dns,
    )
    return candidate


def normalize_portainer_url(url: str) -> str:
    """Validate a Portainer base URL and strip trailing slashes.

    Private addresses are allowed here; Portainer normally runs on the LAN.
    """
    parsed = validate_url_for_ssrf(url, allowed_schemes=["http", "https"], block_private_ips=False)
    if parsed.path not in ("", "/") or parsed.query:
        raise ValidationError("Portainer URL must not contain a path or query string")
    return f"{parsed.scheme}://{parsed.netloc}"
