"""Discord webhook API endpoints."""

import logging

from fastapi import APIRouter, Depends

from dockwatch.schemas.discord import DiscordTestRequest, DiscordTestResponse
from dockwatch.services.notifications.discord import test_webhook
from dockwatch.services.state_service import StateService, get_state_service
from dockwatch.utils.security import mask_webhook_url

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/test", response_model=DiscordTestResponse)
async def test_discord_webhook(
    request: DiscordTestRequest,
    state: StateService = Depends(get_state_service),
) -> DiscordTestResponse:
    """Post a test embed to a webhook.

    URLs that are not Discord webhooks are rejected with 400 before any request.
    """
    masked = mask_webhook_url(request.webhook_url)
    success, message = await test_webhook(request.webhook_url, limiter=state.discord_limiter)
    logger.info(f"Discord webhook test for {masked}: {'ok' if success else message}")
    return DiscordTestResponse(success=success, message=message, webhook=masked)
