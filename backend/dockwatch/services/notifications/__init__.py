"""Notification services package for Dockwatch."""

from dockwatch.services.notifications.base import NotificationService
from dockwatch.services.notifications.dispatcher import NotificationDispatcher

__all__ = ["NotificationService", "NotificationDispatcher"]
