"""Pydantic schemas for Discord webhooks."""

from typing import Optional

from pydantic import BaseModel, Field


class DiscordTestRequest(BaseModel):
    """Body of POST /discord/test."""

    webhook_url: str = Field(..., min_length=1, description="Discord webhook URL to post a test embed to")


class DiscordTestResponse(BaseModel):
    """Result of a webhook test."""

    success: bool
    message: str
    webhook: Optional[str] = None
