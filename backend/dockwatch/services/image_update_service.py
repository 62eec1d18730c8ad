"""Update checks for container images.

Compares a container's recorded digest with the registry's digest for the
same tag and platform. Latest digests are cached on the StateService so a
refresh touching many containers of the same image asks the registry once.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.exceptions import (
    ConfigurationError,
    RateLimitExceededError,
    RemoteAPIError,
    TransientRemoteError,
)
from dockwatch.services.registry_client import (
    DOCKER_HUB_REGISTRY,
    ImageReference,
    ManifestResolution,
    PlatformDescriptor,
    RegistryClient,
    has_update,
    parse_image_reference,
)
from dockwatch.services.settings_service import SettingsService
from dockwatch.services.state_service import StateService
from dockwatch.utils.digest import ensure_digest_prefix, short_digest
from dockwatch.utils.retry import async_retry

logger = logging.getLogger(__name__)


@dataclass
class ImageUpdateInfo:
    """Outcome of one update check."""

    image_name: str
    image_repo: str
    registry: str
    current_tag: Optional[str]
    current_digest: Optional[str]  # 12-char display form
    current_digest_full: Optional[str]
    has_update: bool = False
    latest_tag: Optional[str] = None
    latest_version: Optional[str] = None
    latest_digest: Optional[str] = None
    latest_digest_full: Optional[str] = None
    latest_publish_date: Optional[str] = None
    exists_in_docker_hub: bool = False
    is_manifest_list: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def digest_cache_key(ref: ImageReference, platform: Optional[PlatformDescriptor]) -> str:
    """Cache key for a latest-digest lookup: registry/repo:tag plus platform."""
    return f"digest:{ref.registry}/{ref.repository}:{ref.tag}|{platform or 'unknown'}"


def clear_cached_digests(state: StateService, image_name: str, tag: Optional[str] = None) -> int:
    """Drop cached latest digests for an image (all platforms).

    With ``tag`` given it overrides the tag in image_name; an image name
    without a tag clears the cached entries of every tag.
    """
    ref = parse_image_reference(image_name)
    tag = tag or (ref.tag if ":" in image_name.split("@", 1)[0].rsplit("/", 1)[-1] else None)
    prefix = f"digest:{ref.registry}/{ref.repository}:"
    if tag:
        prefix = f"{prefix}{tag}|"
    removed = state.digest_cache.delete_prefix(prefix)
    if removed:
        logger.info(f"Cleared {removed} cached digest(s) for {ref.repository}:{tag or '*'}")
    return removed


class ImageUpdateService:
    """Resolve current and latest digests for container images."""

    def __init__(
        self,
        state: StateService,
        registry_client: Optional[RegistryClient] = None,
        max_attempts: int = 3,
    ):
        self.state = state
        self.registry = registry_client or RegistryClient(state)
        self.max_attempts = max_attempts

    @classmethod
    async def create(
        cls,
        db: AsyncSession,
        state: StateService,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ImageUpdateService":
        """Build a service with TTLs and Docker Hub credentials from settings."""
        digest_minutes = await SettingsService.get_int(db, "registry_digest_cache_minutes", 30)
        token_minutes = await SettingsService.get_int(db, "registry_token_cache_minutes", 5)
        state.configure(token_ttl_seconds=token_minutes * 60, digest_ttl_seconds=digest_minutes * 60)

        credentials = {}
        username = await SettingsService.get(db, "dockerhub_username")
        token = await SettingsService.get(db, "dockerhub_token")
        if username and token:
            credentials[DOCKER_HUB_REGISTRY] = (username, token)

        return cls(state, RegistryClient(state, client=client, credentials=credentials))

    async def close(self) -> None:
        await self.registry.close()

    @staticmethod
    def resolve_current_digest(
        image_name: str,
        config_image: Optional[str] = None,
        repo_digests: Optional[List[str]] = None,
    ) -> Optional[str]:
        """Digest the container is actually running, from its own inspection data.

        Order: a digest pinned in Config.Image, then the RepoDigests entry for the
        same repository, then one whose last path segment matches, then the first
        entry. Never asks the registry.
        """
        if config_image and "@" in config_image:
            return ensure_digest_prefix(config_image.split("@", 1)[1])

        digests = [d for d in (repo_digests or []) if "@" in d]
        if not digests:
            return None

        try:
            wanted = parse_image_reference(image_name)
        except ConfigurationError:
            return ensure_digest_prefix(digests[0].split("@", 1)[1])

        last_segment = wanted.repository.rsplit("/", 1)[-1]
        fallback = None
        for entry in digests:
            repo_part, digest = entry.split("@", 1)
            try:
                candidate = parse_image_reference(f"{repo_part}@{digest}")
            except ConfigurationError:
                continue
            if candidate.registry == wanted.registry and candidate.repository == wanted.repository:
                return ensure_digest_prefix(digest)
            if fallback is None and candidate.repository.rsplit("/", 1)[-1] == last_segment:
                fallback = digest

        return ensure_digest_prefix(fallback or digests[0].split("@", 1)[1])

    async def get_latest_digest(
        self, image_name: str, platform: Optional[PlatformDescriptor]
    ) -> ManifestResolution:
        """Latest platform digest for an image tag, from cache when fresh.

        Transient failures are retried with backoff; a 429 propagates at once.
        """
        ref = parse_image_reference(image_name)
        cache_key = digest_cache_key(ref, platform)
        cached = self.state.digest_cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Digest cache hit for {ref}")
            return cached

        @async_retry(max_attempts=self.max_attempts, backoff_base=1.0, backoff_max=10.0,
                     exceptions=(TransientRemoteError,))
        async def resolve() -> ManifestResolution:
            return await self.registry.get_platform_specific_digest(image_name, platform)

        resolution = await resolve()
        self.state.digest_cache.set(cache_key, resolution)
        return resolution

    def clear_digest_cache(self, image_name: str, tag: Optional[str] = None) -> int:
        return clear_cached_digests(self.state, image_name, tag)

    async def check_image_update(
        self,
        image_name: str,
        current_digest: Optional[str],
        platform: Optional[PlatformDescriptor],
    ) -> ImageUpdateInfo:
        """Compare the running digest with the registry's latest digest.

        Registry errors other than rate limiting produce a conservative result
        (has_update False, error set, existence probed separately).

        Raises:
            RateLimitExceededError: The registry answered 429
        """
        try:
            ref = parse_image_reference(image_name)
        except ConfigurationError as e:
            return ImageUpdateInfo(
                image_name=image_name,
                image_repo=image_name,
                registry="",
                current_tag=None,
                current_digest=short_digest(current_digest),
                current_digest_full=ensure_digest_prefix(current_digest),
                error=str(e),
            )

        info = ImageUpdateInfo(
            image_name=image_name,
            image_repo=ref.repository,
            registry=ref.registry,
            current_tag=ref.tag,
            current_digest=short_digest(current_digest),
            current_digest_full=ensure_digest_prefix(current_digest),
            latest_tag=ref.tag,
        )

        if ref.digest:
            # Pinned by digest: nothing newer can exist for this reference
            info.latest_digest = short_digest(ref.digest)
            info.latest_digest_full = ensure_digest_prefix(ref.digest)
            info.latest_version = ref.tag
            info.exists_in_docker_hub = ref.is_docker_hub
            return info

        try:
            resolution = await self.get_latest_digest(image_name, platform)
        except RateLimitExceededError:
            raise
        except (RemoteAPIError, ConfigurationError) as e:
            logger.warning(f"Update check failed for {image_name}: {e}")
            info.error = str(e)
            info.exists_in_docker_hub = ref.is_docker_hub and await self.registry.image_exists(image_name)
            return info

        info.latest_digest = short_digest(resolution.digest)
        info.latest_digest_full = ensure_digest_prefix(resolution.digest)
        info.is_manifest_list = resolution.is_manifest_list
        info.exists_in_docker_hub = ref.is_docker_hub
        info.has_update = has_update(current_digest, resolution.digest)
        info.latest_version = ref.tag

        if info.has_update:
            version = await self.registry.get_tag_from_digest(image_name, resolution.digest)
            if version:
                info.latest_version = version
            info.latest_publish_date = await self.registry.get_tag_publish_date(image_name)
            logger.info(
                f"Update available for {image_name}: {info.current_digest} -> {info.latest_digest}"
            )

        return info
