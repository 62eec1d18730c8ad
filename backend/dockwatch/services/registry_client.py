"""OCI registry client for resolving platform-specific image digests.

A running container records the digest of its single-architecture manifest.
Registries answer a tag request for a multi-arch image with a manifest list
(Docker) or image index (OCI), whose own digest never matches any container.
Every digest returned from here therefore refers to the manifest for the
container's actual platform.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
from packaging.version import InvalidVersion, Version

from dockwatch.exceptions import (
    ConfigurationError,
    NoCompatiblePlatformError,
    NotFoundError,
    RateLimitExceededError,
    RemoteAPIError,
    TransientRemoteError,
)
from dockwatch.services.rate_limiter import RateLimitedRequest
from dockwatch.services.state_service import StateService
from dockwatch.utils.digest import normalize_digest
from dockwatch.utils.http_errors import raise_for_status, send_request

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_API = "https://hub.docker.com/v2"

REGISTRY_ALIASES = {
    "docker.io": DOCKER_HUB_REGISTRY,
    "index.docker.io": DOCKER_HUB_REGISTRY,
    "registry.hub.docker.com": DOCKER_HUB_REGISTRY,
}

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MANIFEST_ACCEPT = ", ".join([MANIFEST_V2, MANIFEST_LIST_V2, OCI_MANIFEST, OCI_INDEX])

# (token url, service) per registry; None service = not sent
TOKEN_ENDPOINTS: Dict[str, tuple[str, Optional[str]]] = {
    DOCKER_HUB_REGISTRY: ("https://auth.docker.io/token", "registry.docker.io"),
    "ghcr.io": ("https://ghcr.io/token", None),
    "gcr.io": ("https://gcr.io/v2/token", "gcr.io"),
    "registry.gitlab.com": ("https://gitlab.com/jwt/auth", "container_registry"),
}

MANIFEST_TIMEOUT = 15.0
TOKEN_TIMEOUT = 10.0
HUB_TAG_PAGE_SIZE = 100

# Architecture names as reported by `uname -m` or older engines, mapped to the
# (architecture, variant) pair used in manifest lists
ARCH_ALIASES: Dict[str, tuple[str, Optional[str]]] = {
    "x86_64": ("amd64", None),
    "x86-64": ("amd64", None),
    "aarch64": ("arm64", None),
    "arm64v8": ("arm64", "v8"),
    "armv7l": ("arm", "v7"),
    "armv7": ("arm", "v7"),
    "armhf": ("arm", "v7"),
    "arm32v7": ("arm", "v7"),
    "armv6l": ("arm", "v6"),
    "arm32v6": ("arm", "v6"),
    "i386": ("386", None),
    "i686": ("386", None),
}


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference."""

    registry: str
    repository: str
    tag: Optional[str] = "latest"
    digest: Optional[str] = None

    @property
    def is_docker_hub(self) -> bool:
        return self.registry == DOCKER_HUB_REGISTRY

    @property
    def reference(self) -> str:
        """Tag or digest used in the manifest URL."""
        return self.digest or self.tag or "latest"

    @property
    def cache_key(self) -> str:
        return f"{self.registry}/{self.repository}:{self.reference}"

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name


def parse_image_reference(image: str) -> ImageReference:
    """Parse an image string into registry, repository, tag and digest.

    Examples:
        nginx                       -> registry-1.docker.io/library/nginx:latest
        ghcr.io/org/app:1.2         -> ghcr.io/org/app:1.2
        localhost:5000/app          -> localhost:5000/app:latest
        redis@sha256:abc...         -> registry-1.docker.io/library/redis@sha256:abc...

    Raises:
        ConfigurationError: Empty or malformed reference
    """
    if not image or not image.strip():
        raise ConfigurationError("Image reference cannot be empty")

    remainder = image.strip()
    digest = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if ":" not in digest or not digest.split(":", 1)[1]:
            raise ConfigurationError(f"Invalid digest in image reference: {image}")

    tag = None
    last_slash = remainder.rfind("/")
    last_colon = remainder.rfind(":")
    if last_colon > last_slash:
        remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]
        if not tag:
            raise ConfigurationError(f"Empty tag in image reference: {image}")

    if not digest and not tag:
        tag = "latest"

    registry = DOCKER_HUB_REGISTRY
    repository = remainder
    if "/" in remainder:
        first, rest = remainder.split("/", 1)
        if "." in first or ":" in first or first == "localhost":
            registry, repository = first.lower(), rest

    registry = REGISTRY_ALIASES.get(registry, registry)
    if not repository:
        raise ConfigurationError(f"Missing repository in image reference: {image}")
    if registry == DOCKER_HUB_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


@dataclass(frozen=True)
class PlatformDescriptor:
    """Runtime platform of a container's image."""

    os: str
    architecture: str
    variant: Optional[str] = None

    @classmethod
    def create(cls, os: str, architecture: str, variant: Optional[str] = None) -> "PlatformDescriptor":
        """Build a descriptor, canonicalizing architecture aliases (x86_64, aarch64, armv7l...)."""
        arch = (architecture or "").lower().strip()
        alias_arch, alias_variant = ARCH_ALIASES.get(arch, (arch, None))
        return cls(
            os=(os or "").lower().strip(),
            architecture=alias_arch,
            variant=(variant or alias_variant or None),
        )

    @classmethod
    def from_image_inspect(cls, image_details: Optional[dict]) -> Optional["PlatformDescriptor"]:
        """Platform from an engine image inspection (Os/Architecture/Variant).

        Returns None when the inspection does not carry the fields.
        """
        if not image_details:
            return None
        os_name = image_details.get("Os")
        architecture = image_details.get("Architecture")
        if not os_name or not architecture:
            return None
        return cls.create(os_name, architecture, image_details.get("Variant"))

    @classmethod
    def parse(cls, value: str) -> "PlatformDescriptor":
        """Parse "os/arch[/variant]"."""
        parts = value.strip().split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ConfigurationError(f"Invalid platform: {value}")
        return cls.create(parts[0], parts[1], parts[2] if len(parts) == 3 else None)

    def matches(self, entry_platform: Optional[dict], ignore_variant: bool = False) -> bool:
        """Check a manifest list entry's platform against this descriptor.

        os and architecture must match exactly. When this descriptor carries a
        variant the entry's variant must equal it, otherwise any variant matches.
        """
        if not entry_platform:
            return False
        if entry_platform.get("os") != self.os or entry_platform.get("architecture") != self.architecture:
            return False
        if ignore_variant or not self.variant:
            return True
        return entry_platform.get("variant") == self.variant

    def __str__(self) -> str:
        base = f"{self.os}/{self.architecture}"
        return f"{base}/{self.variant}" if self.variant else base


@dataclass
class ManifestResolution:
    """Result of resolving an image reference for one platform."""

    digest: str
    tag: Optional[str]
    is_manifest_list: bool
    platform: Optional[PlatformDescriptor]


def has_update(running_digest: Optional[str], registry_digest: Optional[str]) -> bool:
    """True only when both digests are known and differ.

    An absent digest on either side never counts as an available update.
    """
    running = normalize_digest(running_digest)
    latest = normalize_digest(registry_digest)
    if not running or not latest:
        return False
    return running != latest


def _is_manifest_list(content_type: str, body: Optional[dict]) -> bool:
    content_type = (content_type or "").lower()
    if "manifest.list" in content_type or "image.index" in content_type:
        return True
    # Some registries answer with a generic content type
    if body and isinstance(body.get("manifests"), list):
        media_type = body.get("mediaType", "")
        return not media_type or "list" in media_type or "index" in media_type
    return False


class RegistryClient:
    """Single-attempt client for the OCI distribution API.

    Every call makes at most one request per endpoint; retries and result
    caching belong to ImageUpdateService. Bearer tokens are cached on the
    injected StateService per registry/repository.
    """

    def __init__(
        self,
        state: StateService,
        client: Optional[httpx.AsyncClient] = None,
        credentials: Optional[Dict[str, tuple[str, str]]] = None,
    ) -> None:
        """Initialize registry client.

        Args:
            state: Shared state (token cache, registry rate limiter)
            client: HTTP client to use, a private one is created when omitted
            credentials: Optional {registry: (username, token)} for token requests
        """
        self.state = state
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        self.credentials = credentials or {}

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    def _token_request(self, ref: ImageReference) -> tuple[str, dict]:
        url, service = TOKEN_ENDPOINTS.get(ref.registry, (f"https://{ref.registry}/token", None))
        params = {"scope": f"repository:{ref.repository}:pull"}
        if service:
            params["service"] = service
        return url, params

    async def get_auth_token(self, ref: ImageReference) -> Optional[str]:
        """Bearer token scoped to pull for ref's repository.

        Failures are logged and return None; the manifest request then goes out
        anonymously.
        """
        cache_key = f"{ref.registry}/{ref.repository}"
        cached = self.state.registry_tokens.get(cache_key)
        if cached:
            return cached

        url, params = self._token_request(ref)
        auth = None
        creds = self.credentials.get(ref.registry)
        if creds and creds[0] and creds[1]:
            auth = httpx.BasicAuth(creds[0], creds[1])

        try:
            async with RateLimitedRequest(self.state.registry_limiter, ref.registry):
                response = await send_request(
                    self.client, "GET", url, f"Token request for {cache_key}",
                    params=params, auth=auth, timeout=TOKEN_TIMEOUT,
                )
            raise_for_status(response, f"Token request for {cache_key}")
            data = response.json()
        except RemoteAPIError as e:
            logger.warning(f"Could not obtain registry token for {cache_key}, trying anonymous: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Invalid token response for {cache_key}: {e}")
            return None

        token = data.get("token") or data.get("access_token")
        if token:
            self.state.registry_tokens.set(cache_key, token)
        return token

    async def get_manifest(self, ref: ImageReference, reference: Optional[str] = None) -> httpx.Response:
        """GET the manifest for a tag or digest.

        Raises:
            TransientRemoteError: Network failure or 5xx
            AuthenticationError: 401/403
            NotFoundError: Unknown repository or tag
            RateLimitExceededError: 429
        """
        reference = reference or ref.reference
        url = f"https://{ref.registry}/v2/{ref.repository}/manifests/{reference}"
        headers = {"Accept": MANIFEST_ACCEPT}
        token = await self.get_auth_token(ref)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        context = f"Manifest request for {ref.registry}/{ref.repository}:{reference}"
        async with RateLimitedRequest(self.state.registry_limiter, ref.registry):
            response = await send_request(
                self.client, "GET", url, context, headers=headers, timeout=MANIFEST_TIMEOUT
            )
        raise_for_status(response, context)
        return response

    async def get_platform_specific_digest(
        self, image_ref: str, platform: Optional[PlatformDescriptor]
    ) -> ManifestResolution:
        """Resolve the single-architecture manifest digest for a platform.

        Digest-pinned references resolve to themselves without a request.

        Raises:
            ConfigurationError: Malformed reference, or a manifest list with no platform to match
            NoCompatiblePlatformError: No manifest list entry for the platform
            RemoteAPIError: Registry errors, see get_manifest()
        """
        ref = parse_image_reference(image_ref)
        if ref.digest:
            return ManifestResolution(
                digest=ref.digest, tag=ref.tag, is_manifest_list=False, platform=platform
            )

        logger.debug(f"Querying registry {ref} for platform {platform or 'unknown'}")
        response = await self.get_manifest(ref)
        try:
            body = response.json()
        except ValueError:
            body = None

        if _is_manifest_list(response.headers.get("content-type", ""), body):
            entry = self._select_platform_manifest(body, platform, ref)
            selected = entry.get("platform") or {}
            return ManifestResolution(
                digest=entry["digest"],
                tag=ref.tag,
                is_manifest_list=True,
                platform=PlatformDescriptor.create(
                    selected.get("os", ""), selected.get("architecture", ""), selected.get("variant")
                ),
            )

        digest = response.headers.get("Docker-Content-Digest")
        if not digest and response.content:
            digest = f"sha256:{hashlib.sha256(response.content).hexdigest()}"
        if not digest:
            raise TransientRemoteError(f"Registry returned no digest for {ref}")

        logger.debug(f"Single-arch manifest for {ref}: {digest[:19]}...")
        return ManifestResolution(digest=digest, tag=ref.tag, is_manifest_list=False, platform=platform)

    def _select_platform_manifest(
        self, body: Optional[dict], platform: Optional[PlatformDescriptor], ref: ImageReference
    ) -> dict:
        manifests: List[dict] = (body or {}).get("manifests") or []
        if not manifests:
            raise TransientRemoteError(f"Invalid manifest list for {ref}: no manifests array")
        if platform is None:
            raise ConfigurationError(
                f"{ref} is a multi-platform image but the container's platform is unknown"
            )

        for entry in manifests:
            if platform.matches(entry.get("platform")) and entry.get("digest"):
                return entry

        for entry in manifests:
            if platform.matches(entry.get("platform"), ignore_variant=True) and entry.get("digest"):
                logger.warning(
                    f"No exact platform match for {ref} (wanted {platform}), "
                    f"using {entry['platform'].get('variant') or 'no'} variant entry"
                )
                return entry

        available = ", ".join(
            str(PlatformDescriptor.create(
                e["platform"].get("os", "?"), e["platform"].get("architecture", "?"), e["platform"].get("variant")
            ))
            for e in manifests if e.get("platform")
        )
        raise NoCompatiblePlatformError(
            f"No compatible platform in manifest list for {ref} (wanted {platform}, available: {available})"
        )

    async def image_exists(self, image_ref: str) -> bool:
        """Best-effort probe that the repository and tag exist in the registry."""
        try:
            ref = parse_image_reference(image_ref)
            if ref.digest:
                return True
            await self.get_manifest(ref)
            return True
        except NotFoundError:
            return False
        except RateLimitExceededError:
            raise
        except (RemoteAPIError, ConfigurationError) as e:
            logger.debug(f"Existence probe failed for {image_ref}: {e}")
            return False

    async def get_tag_publish_date(self, image_ref: str) -> Optional[str]:
        """Publish date of a Docker Hub tag (ISO string), None elsewhere or on error."""
        ref = parse_image_reference(image_ref)
        if not ref.is_docker_hub or not ref.tag:
            return None

        url = f"{DOCKER_HUB_API}/repositories/{ref.repository}/tags/{ref.tag}"
        try:
            response = await send_request(self.client, "GET", url, f"Docker Hub tag {ref.repository}:{ref.tag}")
            raise_for_status(response, f"Docker Hub tag {ref.repository}:{ref.tag}")
            data = response.json()
        except RemoteAPIError as e:
            logger.debug(f"Could not fetch publish date for {ref.repository}:{ref.tag}: {e}")
            return None
        except ValueError as e:
            logger.error(f"Invalid response data fetching Docker Hub metadata for {ref.repository}:{ref.tag}: {e}")
            return None

        return data.get("tag_last_pushed") or data.get("last_updated")

    async def get_tag_from_digest(self, image_ref: str, digest: Optional[str]) -> Optional[str]:
        """Find a human readable tag that points at ``digest`` (Docker Hub only).

        Matches both the tag's own digest and the per-platform image digests.
        Version-like tags win over names such as "latest"; among versions the
        highest one is returned.
        """
        ref = parse_image_reference(image_ref)
        wanted = normalize_digest(digest)
        if not ref.is_docker_hub or not wanted:
            return None

        cache_key = f"tag-for-digest:{ref.repository}:{wanted}"
        cached = self.state.digest_cache.get(cache_key)
        if cached is not None:
            return cached or None

        url = f"{DOCKER_HUB_API}/repositories/{ref.repository}/tags"
        context = f"Docker Hub tag listing for {ref.repository}"
        try:
            response = await send_request(
                self.client, "GET", url, context,
                params={"page_size": HUB_TAG_PAGE_SIZE, "ordering": "last_updated"},
            )
            raise_for_status(response, context)
            results = response.json().get("results", [])
        except RemoteAPIError as e:
            logger.debug(f"Could not list tags for {ref.repository}: {e}")
            return None
        except (ValueError, AttributeError) as e:
            logger.error(f"Invalid tag listing for {ref.repository}: {e}")
            return None

        matching: List[str] = []
        for tag in results:
            digests = {normalize_digest(tag.get("digest"))}
            digests.update(normalize_digest(image.get("digest")) for image in tag.get("images") or [])
            if wanted in digests and tag.get("name"):
                matching.append(tag["name"])

        best = _pick_version_tag(matching)
        self.state.digest_cache.set(cache_key, best or "")
        return best


def _pick_version_tag(tags: List[str]) -> Optional[str]:
    """Highest version-like tag, else the first non-"latest" tag, else the first tag."""
    if not tags:
        return None

    versions = []
    for tag in tags:
        try:
            versions.append((Version(tag.lstrip("vV")), tag))
        except InvalidVersion:
            continue
    if versions:
        return max(versions)[1]

    named = [tag for tag in tags if tag != "latest"]
    return named[0] if named else tags[0]

