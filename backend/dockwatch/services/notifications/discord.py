"""Discord webhook notification service for Dockwatch."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Optional

import httpx

from dockwatch.exceptions import ValidationError
from dockwatch.services.notifications.base import NotificationService
from dockwatch.services.rate_limiter import SlidingWindowRateLimiter, create_discord_rate_limiter
from dockwatch.utils.http_errors import parse_retry_after
from dockwatch.utils.security import mask_webhook_url
from dockwatch.utils.url_validation import validate_discord_webhook_url

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
DEFAULT_RETRY_AFTER_SECONDS = 60.0
UPDATE_COLOR = 3066993  # Green
FOOTER_TEXT = "Dockwatch"


def format_publish_date(value: Optional[str]) -> Optional[str]:
    """ISO timestamp -> "Mar 5, 2025". Unparseable values are returned unchanged."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def build_update_embed(image_data: dict[str, Any]) -> dict[str, Any]:
    """Webhook payload announcing a newly available version.

    Args:
        image_data: name, image_name, current_version, latest_version and
            optionally latest_publish_date
    """
    name = image_data.get("name") or image_data.get("image_name") or "Unknown"
    fields = [
        {"name": "Current Version", "value": image_data.get("current_version") or "Unknown", "inline": True},
        {"name": "Latest Version", "value": image_data.get("latest_version") or "Unknown", "inline": True},
        {"name": "Source", "value": f"Docker: {image_data.get('image_name') or 'Unknown'}", "inline": False},
    ]
    publish_date = format_publish_date(image_data.get("latest_publish_date"))
    if publish_date:
        fields.append({"name": "Release Date", "value": publish_date, "inline": True})

    embed = {
        "title": "\U0001f195 Version Available",
        "description": f"A new version of **{name}** is now available!",
        "color": UPDATE_COLOR,
        "fields": fields,
        "timestamp": datetime.now(UTC).isoformat(),
        "footer": {"text": FOOTER_TEXT},
    }
    return {"embeds": [embed]}


def _retry_after(response: httpx.Response) -> float:
    """Seconds to wait after a 429: Retry-After header, then the JSON body."""
    seconds = parse_retry_after(response.headers.get("Retry-After"))
    if seconds is not None:
        return seconds
    try:
        body = response.json()
        if isinstance(body, dict) and body.get("retry_after") is not None:
            return max(0.0, float(body["retry_after"]))
    except ValueError:
        pass
    return DEFAULT_RETRY_AFTER_SECONDS


class DiscordNotificationService(NotificationService):
    """Discord webhook notification service implementation."""

    service_name = "discord"

    def __init__(
        self,
        webhook_url: str,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        """Initialize Discord service.

        Args:
            webhook_url: Discord webhook URL
            limiter: Shared per-webhook limiter (30 requests / 60 s)
            client: HTTP client to use, a private one is created when omitted
            sleep: Async sleep used for 5xx backoff, injectable for tests
            max_retries: Retries after the first attempt

        Raises:
            ValidationError: If the URL is not a Discord webhook URL
            SSRFProtectionError: If webhook URL fails SSRF validation
        """
        try:
            self.webhook_url = validate_discord_webhook_url(webhook_url)
        except ValidationError as e:
            logger.error(f"[discord] Webhook URL rejected: {e}")
            raise

        self.limiter = limiter or create_discord_rate_limiter()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self._sleep = sleep
        self.max_retries = max_retries
        self.last_error: Optional[str] = None

    async def close(self) -> None:
        """Close HTTP client."""
        if self._owns_client:
            await self.client.aclose()

    async def send_payload(self, payload: dict[str, Any]) -> bool:
        """POST a payload with rate limiting and retry.

        Every attempt first takes a slot from the per-webhook limiter. A 429
        blocks the webhook in the limiter for Retry-After seconds, so the next
        attempt waits exactly that long. Network errors and 5xx back off
        2^attempt seconds. Other 4xx responses are terminal.
        """
        masked = mask_webhook_url(self.webhook_url)
        for attempt in range(self.max_retries + 1):
            await self.limiter.acquire(self.webhook_url)
            try:
                response = await self.client.post(self.webhook_url, json=payload)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                self.last_error = f"{type(e).__name__}: {e}"
                response = None
            finally:
                await self.limiter.release(self.webhook_url)

            if response is not None:
                status = response.status_code
                if 200 <= status < 300:
                    self.last_error = None
                    return True

                if status == 429:
                    wait = _retry_after(response)
                    self.last_error = "Rate limited by Discord"
                    logger.warning(f"[discord] Rate limit hit for {masked}, waiting {wait:.1f}s")
                    await self.limiter.block_for(self.webhook_url, wait)
                    if attempt < self.max_retries:
                        continue
                    break

                self.last_error = f"HTTP {status}: {response.text[:200]}"
                if status < 500:
                    logger.error(f"[discord] Webhook error (not retrying): {self.last_error}")
                    return False

            if attempt < self.max_retries:
                backoff = 2 ** attempt
                logger.warning(
                    f"[discord] Attempt {attempt + 1}/{self.max_retries + 1} failed "
                    f"({self.last_error}), retrying in {backoff}s"
                )
                await self._sleep(backoff)

        logger.error(f"[discord] Notification failed after {self.max_retries + 1} attempts: {self.last_error}")
        return False

    async def send(
        self,
        title: str,
        message: str,
        fields: list[dict[str, Any]] | None = None,
        url: str | None = None,
    ) -> bool:
        """Send a single embed via the webhook.

        Args:
            title: Embed title
            message: Embed description
            fields: Optional embed fields
            url: Optional click URL

        Returns:
            True if notification sent successfully
        """
        embed: dict[str, Any] = {
            "title": title,
            "description": message,
            "color": UPDATE_COLOR,
            "timestamp": datetime.now(UTC).isoformat(),
            "footer": {"text": FOOTER_TEXT},
        }
        if fields:
            embed["fields"] = fields
        if url:
            embed["url"] = url

        success = await self.send_payload({"embeds": [embed]})
        if success:
            logger.info(f"[discord] Sent notification: {title}")
        return success

    async def test_connection(self) -> tuple[bool, str]:
        """Test Discord webhook by sending a test notification.

        Returns:
            Tuple of (success, message)
        """
        success = await self.send(
            title="\U0001f527 Webhook Test",
            message=(
                "This is a test notification from Dockwatch. "
                "If you see this, your webhook is configured correctly!"
            ),
        )
        if success:
            return True, "Test notification sent successfully"
        return False, f"Failed to send test notification: {self.last_error or 'unknown error'}"


async def test_webhook(
    webhook_url: str,
    client: Optional[httpx.AsyncClient] = None,
    limiter: Optional[SlidingWindowRateLimiter] = None,
) -> tuple[bool, str]:
    """Validate a webhook URL and post a test embed to it.

    Invalid URLs are rejected before any request is made.

    Raises:
        ValidationError: URL is not a Discord webhook or points at a private address
    """
    service = DiscordNotificationService(webhook_url, limiter=limiter, client=client, max_retries=0)
    async with service:
        return await service.test_connection()


# Not a pytest test despite the name
test_webhook.__test__ = False
