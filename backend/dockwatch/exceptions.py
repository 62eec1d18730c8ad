"""Custom exceptions for the Dockwatch application."""

from typing import Optional


class DockwatchError(Exception):
    """Base class for all application errors."""

    pass


class RemoteAPIError(DockwatchError):
    """Raised when a remote API (registry, Portainer, Discord) answers with an error.

    Carries the HTTP status code (when one was received) and whatever detail the
    remote side returned so callers can surface it without re-parsing responses.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class TransientRemoteError(RemoteAPIError):
    """Network failure, timeout or 5xx response. Safe to retry with backoff."""

    pass


class AuthenticationError(RemoteAPIError):
    """401/403 from Portainer or a registry after re-authentication was attempted."""

    pass


class RateLimitExceededError(RemoteAPIError):
    """A remote service answered 429.

    For container queries this is fatal for the whole refresh; notification
    delivery waits ``retry_after`` seconds and tries again.
    """

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
        detail: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code, detail=detail)
        self.retry_after = retry_after


class NotFoundError(RemoteAPIError):
    """Container, image or manifest vanished. Never retried."""

    pass


class ConfigurationError(DockwatchError):
    """Malformed image reference, missing credentials and similar setup problems."""

    pass


class NoCompatiblePlatformError(ConfigurationError):
    """A manifest list has no entry for the requested platform."""

    pass


class ValidationError(DockwatchError):
    """Untrusted input rejected before any network call."""

    pass


class SSRFProtectionError(ValidationError):
    """Raised when a URL fails SSRF (Server-Side Request Forgery) validation.

    This exception indicates that a URL was blocked for security reasons,
    either because it points to a private/internal resource (localhost, private IPs,
    cloud metadata endpoints) or violates other SSRF protection policies.
    """

    pass


class UpgradeInProgressError(DockwatchError):
    """Another upgrade already holds the lock for this container."""

    def __init__(self, instance_id, container_id: str, owner: Optional[str] = None):
        self.instance_id = instance_id
        self.container_id = container_id
        self.owner = owner
        super().__init__(
            f"Upgrade already in progress for container {container_id[:12]} "
            f"on instance {instance_id}"
        )


class UpgradeError(DockwatchError):
    """An upgrade step failed.

    The orchestrator does not roll back, so the message names the step that
    failed and ``logs`` holds recent container output when it could be fetched.
    """

    def __init__(self, message: str, step: Optional[str] = None, logs: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.logs = logs
