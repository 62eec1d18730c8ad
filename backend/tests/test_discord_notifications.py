"""Tests for the Discord webhook service (dockwatch/services/notifications/discord.py)."""

import httpx
import pytest

from dockwatch.exceptions import SSRFProtectionError, ValidationError
from dockwatch.services.notifications.discord import (
    DiscordNotificationService,
    build_update_embed,
    format_publish_date,
    test_webhook as send_test_webhook,
)
from dockwatch.services.rate_limiter import create_discord_rate_limiter

WEBHOOK_URL = "https://discord.com/api/webhooks/123456789/abc_DEF-token"


class ScriptedWebhook:
    """MockTransport handler answering with a fixed sequence of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def make_service(clock):
    clients = []

    def _make(handler, max_retries=3):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        limiter = create_discord_rate_limiter(clock=clock, sleep=clock.sleep)
        return DiscordNotificationService(
            WEBHOOK_URL, limiter=limiter, client=client, sleep=clock.sleep, max_retries=max_retries
        )

    yield _make


class TestSendPayload:
    """Test suite for retry and rate limit handling."""

    async def test_success(self, make_service, clock):
        handler = ScriptedWebhook(httpx.Response(204))
        service = make_service(handler)

        assert await service.send_payload({"content": "hi"}) is True
        assert len(handler.requests) == 1
        assert clock.sleeps == []

    async def test_retry_after_header_is_honored(self, make_service, clock):
        """Test that a 429 waits exactly Retry-After seconds before the next attempt."""
        handler = ScriptedWebhook(
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(204),
        )
        service = make_service(handler)

        assert await service.send_payload({"content": "hi"}) is True
        assert len(handler.requests) == 2
        assert clock.sleeps == [2.0]

    async def test_retry_after_from_json_body(self, make_service, clock):
        handler = ScriptedWebhook(
            httpx.Response(429, json={"message": "You are being rate limited.", "retry_after": 1.5}),
            httpx.Response(204),
        )
        service = make_service(handler)

        assert await service.send_payload({"content": "hi"}) is True
        assert clock.sleeps == [1.5]

    async def test_server_error_backs_off(self, make_service, clock):
        handler = ScriptedWebhook(httpx.Response(500, text="oops"), httpx.Response(204))
        service = make_service(handler)

        assert await service.send_payload({"content": "hi"}) is True
        assert clock.sleeps == [1]

    async def test_client_error_is_terminal(self, make_service, clock):
        """Test that a 4xx other than 429 is not retried."""
        handler = ScriptedWebhook(httpx.Response(400, json={"message": "Invalid Form Body"}))
        service = make_service(handler)

        assert await service.send_payload({"content": "hi"}) is False
        assert len(handler.requests) == 1
        assert clock.sleeps == []
        assert service.last_error.startswith("HTTP 400")

    async def test_network_errors_exhaust_retries(self, make_service, clock):
        handler = ScriptedWebhook(httpx.ConnectError("connection refused"))
        service = make_service(handler)

        assert await service.send_payload({"content": "hi"}) is False
        assert len(handler.requests) == 4
        assert clock.sleeps == [1, 2, 4]
        assert "ConnectError" in service.last_error

    async def test_rate_limited_on_every_attempt(self, make_service, clock):
        handler = ScriptedWebhook(httpx.Response(429, headers={"Retry-After": "3"}))
        service = make_service(handler, max_retries=1)

        assert await service.send_payload({"content": "hi"}) is False
        assert len(handler.requests) == 2
        assert service.last_error == "Rate limited by Discord"


class TestServiceConstruction:
    """Test suite for webhook URL validation."""

    def test_rejects_non_discord_url(self):
        with pytest.raises(ValidationError):
            DiscordNotificationService("https://example.com/hook")

    def test_rejects_plain_http(self):
        with pytest.raises(ValidationError):
            DiscordNotificationService("http://discord.com/api/webhooks/1/token")

    def test_strips_whitespace(self):
        service = DiscordNotificationService(f"  {WEBHOOK_URL}\n", client=httpx.AsyncClient())

        assert service.webhook_url == WEBHOOK_URL


class TestWebhookTest:
    """Test suite for test_webhook."""

    async def test_sends_test_embed(self, clock):
        handler = ScriptedWebhook(httpx.Response(204))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            limiter = create_discord_rate_limiter(clock=clock, sleep=clock.sleep)
            success, message = await send_test_webhook(WEBHOOK_URL, client=client, limiter=limiter)

        assert success is True
        assert message == "Test notification sent successfully"
        assert b"Webhook Test" in handler.requests[0].content

    async def test_failure_reports_error(self, clock):
        handler = ScriptedWebhook(httpx.Response(404, json={"message": "Unknown Webhook"}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            limiter = create_discord_rate_limiter(clock=clock, sleep=clock.sleep)
            success, message = await send_test_webhook(WEBHOOK_URL, client=client, limiter=limiter)

        assert success is False
        assert "HTTP 404" in message

    async def test_invalid_url_makes_no_request(self):
        """Test that an invalid URL is rejected before any network call."""
        handler = ScriptedWebhook(httpx.Response(204))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ValidationError):
                await send_test_webhook("https://discord.com/not-a-webhook", client=client)

        assert handler.requests == []

    def test_ssrf_error_is_a_validation_error(self):
        assert issubclass(SSRFProtectionError, ValidationError)


class TestUpdateEmbed:
    """Test suite for build_update_embed and format_publish_date."""

    def test_embed_fields(self):
        payload = build_update_embed(
            {
                "name": "nginx",
                "image_name": "nginx:1.25",
                "current_version": "1.25",
                "latest_version": "1.25.5",
                "latest_publish_date": "2025-03-05T10:00:00Z",
            }
        )

        embed = payload["embeds"][0]
        assert embed["description"] == "A new version of **nginx** is now available!"
        assert embed["fields"][0] == {"name": "Current Version", "value": "1.25", "inline": True}
        assert embed["fields"][1]["value"] == "1.25.5"
        assert embed["fields"][2]["value"] == "Docker: nginx:1.25"
        assert embed["fields"][3] == {"name": "Release Date", "value": "Mar 5, 2025", "inline": True}
        assert embed["footer"] == {"text": "Dockwatch"}

    def test_missing_values_fall_back_to_unknown(self):
        embed = build_update_embed({})["embeds"][0]

        assert "**Unknown**" in embed["description"]
        assert [field["value"] for field in embed["fields"]] == ["Unknown", "Unknown", "Docker: Unknown"]

    def test_format_publish_date(self):
        assert format_publish_date("2024-12-24T08:30:00+00:00") == "Dec 24, 2024"
        assert format_publish_date(None) is None
        assert format_publish_date("yesterday") == "yesterday"
