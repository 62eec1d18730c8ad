"""Abstract base class for notification services."""

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class NotificationService(ABC):
    """Abstract base class for notification destinations.

    Implementations deliver one payload to one destination and report whether
    it arrived. Retry and rate limiting are the implementation's job; dedup and
    queueing belong to the dispatcher.
    """

    # Service identifier used in logging
    service_name: str = "base"

    @abstractmethod
    async def send(
        self,
        title: str,
        message: str,
        fields: list[dict[str, Any]] | None = None,
        url: str | None = None,
    ) -> bool:
        """Send a notification.

        Args:
            title: Notification title
            message: Notification body
            fields: Optional name/value pairs shown below the body
            url: Optional click URL

        Returns:
            True if notification was sent successfully
        """
        pass

    @abstractmethod
    async def send_payload(self, payload: dict[str, Any]) -> bool:
        """Deliver a pre-built payload.

        Returns:
            True on terminal success, False on terminal failure
        """
        pass

    @abstractmethod
    async def test_connection(self) -> tuple[bool, str]:
        """Test the service connection.

        Returns:
            Tuple of (success, message)
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources (close HTTP clients, etc.)."""
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
        return False
