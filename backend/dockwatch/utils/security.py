"""Security helpers for log hygiene and untrusted identifiers.

- Log injection: strip control characters from user-controlled values
- Sensitive data exposure: mask tokens and webhook secrets in logs/responses
- Container identifiers: validate names and IDs before they reach API paths
"""

import re
from typing import Union
from urllib.parse import urlparse

from dockwatch.exceptions import ValidationError

# Docker container names: [a-zA-Z0-9][a-zA-Z0-9_.-]+ (leading slash stripped)
CONTAINER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
# Full or abbreviated hex container/image IDs
CONTAINER_ID_PATTERN = re.compile(r"^[a-f0-9]{12,64}$")


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Remove newlines and control characters from log messages.

    Prevents log injection where container names or labels coming back from a
    Portainer instance carry newlines that would forge extra log lines.

    Examples:
        >>> sanitize_log_message("Container\\nmalicious\\nlog")
        'Containermaliciouslog'
    """
    if msg is None:
        return ""

    if isinstance(msg, bytes):
        msg = msg.decode("utf-8", errors="replace")

    return re.sub(r"[\n\r\t\x00-\x1f\x7f-\x9f]", "", str(msg))


def mask_sensitive(value: Union[str, None], visible_chars: int = 4, mask_char: str = "*") -> str:
    """Mask sensitive values, showing only the last N characters.

    Examples:
        >>> mask_sensitive("sk_live_1234567890abcdef")
        '***cdef'
        >>> mask_sensitive("abc", visible_chars=4)
        '***'
    """
    if not value or len(value) <= visible_chars:
        return mask_char * 3
    return f"{mask_char * 3}{value[-visible_chars:]}"


def mask_webhook_url(url: Union[str, None]) -> str:
    """Hide the secret token part of a webhook URL, keep host and webhook id.

    Examples:
        >>> mask_webhook_url("https://discord.com/api/webhooks/123/abcdefgh")
        'https://discord.com/api/webhooks/123/***efgh'
    """
    if not url:
        return "***"
    parsed = urlparse(url)
    path, _, secret = parsed.path.rpartition("/")
    if not path:
        return mask_sensitive(url)
    return f"{parsed.scheme}://{parsed.netloc}{path}/{mask_sensitive(secret)}"


def normalize_container_name(name: str) -> str:
    """Strip the leading slash Docker puts on container names."""
    return name[1:] if name and name.startswith("/") else (name or "")


def validate_container_name(name: str) -> str:
    """Validate a Docker container name.

    Args:
        name: Container name, with or without the leading slash

    Returns:
        Name without leading slash

    Raises:
        ValidationError: If the name contains characters Docker would reject
    """
    clean = normalize_container_name(name)
    if not clean or not CONTAINER_NAME_PATTERN.match(clean):
        raise ValidationError(f"Invalid container name: {sanitize_log_message(name)}")
    return clean


def validate_container_id(container_id: str) -> str:
    """Validate a container ID (12-64 lowercase hex characters) or a container name.

    Portainer accepts either in API paths; anything else is rejected so that
    user input can never inject additional path segments.
    """
    if not container_id:
        raise ValidationError("Container ID is required")
    if CONTAINER_ID_PATTERN.match(container_id):
        return container_id
    return validate_container_name(container_id)
