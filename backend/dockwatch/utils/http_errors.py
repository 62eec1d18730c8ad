"""Translate httpx failures into the application's error taxonomy."""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from dockwatch.exceptions import (
    AuthenticationError,
    NotFoundError,
    RateLimitExceededError,
    RemoteAPIError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 500


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP date) into seconds."""
    if value is None or value == "":
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


def extract_error_detail(response: httpx.Response) -> Optional[str]:
    """Best-effort error message from a JSON or text error body.

    Understands the Docker engine/Portainer shape ({"message": ...}), the OCI
    distribution shape ({"errors": [{"message": ...}]}) and plain text.
    """
    try:
        body: Any = response.json()
    except ValueError:
        text = response.text.strip() if response.content else ""
        return text[:MAX_DETAIL_LENGTH] or None

    if isinstance(body, dict):
        for key in ("message", "detail", "details", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key][:MAX_DETAIL_LENGTH]
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            message = errors[0].get("message") or errors[0].get("code")
            if message:
                return str(message)[:MAX_DETAIL_LENGTH]
    return None


def raise_for_status(response: httpx.Response, context: str) -> None:
    """Raise the matching DockwatchError subclass for an error response.

    Args:
        response: Response to check
        context: Human readable description of the call, used in the message

    Raises:
        RateLimitExceededError: 429 (retry_after from the Retry-After header)
        AuthenticationError: 401/403
        NotFoundError: 404
        TransientRemoteError: 5xx
        RemoteAPIError: any other 4xx
    """
    status = response.status_code
    if status < 400:
        return

    detail = extract_error_detail(response)
    message = f"{context}: HTTP {status}"
    if detail:
        message = f"{message} - {detail}"

    if status == 429:
        raise RateLimitExceededError(
            message,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            detail=detail,
        )
    if status in (401, 403):
        raise AuthenticationError(message, status_code=status, detail=detail)
    if status == 404:
        raise NotFoundError(message, status_code=status, detail=detail)
    if status >= 500:
        raise TransientRemoteError(message, status_code=status, detail=detail)
    raise RemoteAPIError(message, status_code=status, detail=detail)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    context: str,
    **kwargs,
) -> httpx.Response:
    """Perform one HTTP request, mapping transport failures to TransientRemoteError.

    The response is returned unchecked; callers decide which statuses are errors.
    """
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientRemoteError(f"{context}: request timed out") from e
    except httpx.TransportError as e:
        raise TransientRemoteError(f"{context}: {type(e).__name__}: {e}") from e
