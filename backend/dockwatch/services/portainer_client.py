"""Docker engine access through the Portainer API.

Portainer proxies the Docker engine API of each environment ("endpoint") under
/api/endpoints/{id}/docker/. JWTs are cached per instance URL on the
StateService; a 401 drops the cached token, re-authenticates and retries the
call once.
"""

import asyncio
import json
import logging
import struct
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from dockwatch.exceptions import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    RemoteAPIError,
)
from dockwatch.models import PortainerInstance
from dockwatch.services.state_service import StateService
from dockwatch.utils.encryption import decrypt_secret
from dockwatch.utils.http_errors import extract_error_detail, raise_for_status, send_request
from dockwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
PULL_TIMEOUT = 600.0
STOP_GRACE_SECONDS = 10


def split_image_for_pull(image_name: str) -> tuple[str, str]:
    """Split an image into the (fromImage, tag) pair of POST /images/create.

    The tag may also be a digest; a colon inside a registry host:port is not a tag.
    """
    if "@" in image_name:
        name, digest = image_name.split("@", 1)
        last_slash = name.rfind("/")
        last_colon = name.rfind(":")
        if last_colon > last_slash:
            name = name[:last_colon]
        return name, digest

    last_slash = image_name.rfind("/")
    last_colon = image_name.rfind(":")
    if last_colon > last_slash:
        return image_name[:last_colon], image_name[last_colon + 1:]
    return image_name, "latest"


def demux_log_stream(data: bytes) -> str:
    """Decode Docker's multiplexed stdout/stderr log stream.

    Containers without a TTY prefix every frame with an 8-byte header
    (stream type, 3 zero bytes, big-endian payload length). TTY containers
    send raw text, returned as-is.
    """
    if len(data) < 8 or data[0] not in (0, 1, 2) or data[1:4] != b"\x00\x00\x00":
        return data.decode("utf-8", errors="replace")

    chunks = []
    offset = 0
    while offset + 8 <= len(data):
        (size,) = struct.unpack(">I", data[offset + 4:offset + 8])
        offset += 8
        chunks.append(data[offset:offset + size])
        offset += size
    return b"".join(chunks).decode("utf-8", errors="replace")


class PortainerClient:
    """Client for one Portainer instance."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        state: StateService,
        client: Optional[httpx.AsyncClient] = None,
        verify_ssl: bool = False,
    ):
        """Initialize Portainer client.

        Args:
            url: Instance base URL (scheme://host[:port]), also the token cache key
            username: Portainer username
            password: Portainer password (decrypted)
            state: Shared state holding the JWT cache
            client: HTTP client to use, a private one is created when omitted
            verify_ssl: Verify TLS certificates (private client only)
        """
        self.url = url.rstrip("/")
        self.username = username
        self.password = password
        self.state = state
        self._base_url = self.url
        self._host_header: Optional[str] = None
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, verify=verify_ssl)

    @classmethod
    def for_instance(
        cls,
        instance: PortainerInstance,
        state: StateService,
        client: Optional[httpx.AsyncClient] = None,
        verify_ssl: bool = False,
    ) -> "PortainerClient":
        """Client for a stored instance, decrypting its password."""
        return cls(
            instance.url,
            instance.username,
            decrypt_secret(instance.password),
            state,
            client=client,
            verify_ssl=verify_ssl,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def use_ip_address(self, ip_url: Optional[str]) -> None:
        """Send subsequent requests to ip_url instead of the hostname URL.

        Used while upgrading the reverse proxy that fronts Portainer itself.
        Passing None restores the hostname URL.
        """
        self._base_url = (ip_url or self.url).rstrip("/")
        # Portainer behind a virtual host still expects the original Host header
        self._host_header = urlparse(self.url).netloc if ip_url else None
        if ip_url:
            logger.info(f"Portainer requests for {self.url} redirected to {self._base_url}")

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self._host_header:
            headers["Host"] = self._host_header
        return headers

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "PortainerClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    async def authenticate(self, force: bool = False) -> str:
        """Get a JWT, from cache unless force is set.

        Raises:
            AuthenticationError: Credentials rejected or no token in the response
        """
        if not force:
            cached = self.state.portainer_tokens.get(self.url)
            if cached:
                return cached

        if not self.username or not self.password:
            raise ConfigurationError(f"Username and password are required for Portainer at {self.url}")

        context = f"Portainer authentication at {self.url}"
        payloads = [
            {"username": self.username, "password": self.password},
            {"Username": self.username, "Password": self.password},
            {"user": self.username, "password": self.password},
        ]

        response = None
        for index, payload in enumerate(payloads):
            response = await send_request(
                self.client, "POST", f"{self._base_url}/api/auth", context,
                json=payload, headers=self._headers(),
            )
            # 422 means the payload shape was not understood; older releases use other casings
            if response.status_code != 422:
                break
            if index + 1 < len(payloads):
                logger.warning(f"{context} rejected payload format, trying alternative")

        if response.status_code in (400, 401, 403, 422):
            raise AuthenticationError(
                f"{context} failed: HTTP {response.status_code}",
                status_code=response.status_code,
                detail=extract_error_detail(response),
            )
        raise_for_status(response, context)

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError(f"{context} returned invalid JSON") from e

        token = data.get("jwt") or data.get("token")
        if not token:
            raise AuthenticationError(f"{context} response missing token")

        self.state.portainer_tokens.set(self.url, token)
        return token

    async def _request(
        self,
        method: str,
        path: str,
        context: str,
        ok_statuses: tuple[int, ...] = (),
        **kwargs,
    ) -> httpx.Response:
        """Authenticated request with one re-authentication on 401.

        Statuses listed in ok_statuses (e.g. 304 for stop/start) are returned
        instead of raised.
        """
        url = f"{self._base_url}{path}"
        token = await self.authenticate()
        response = await send_request(
            self.client, method, url, context,
            headers=self._headers(token), **kwargs,
        )

        if response.status_code == 401:
            logger.info(f"Portainer token for {self.url} rejected, re-authenticating")
            self.state.portainer_tokens.delete(self.url)
            token = await self.authenticate(force=True)
            response = await send_request(
                self.client, method, url, context,
                headers=self._headers(token), **kwargs,
            )

        if response.status_code in ok_statuses:
            return response
        raise_for_status(response, context)
        return response

    @staticmethod
    def _docker(endpoint_id, path: str) -> str:
        return f"/api/endpoints/{endpoint_id}/docker/{path}"

    async def list_endpoints(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/api/endpoints", f"List endpoints on {self.url}")
        return response.json()

    async def list_containers(self, endpoint_id) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", self._docker(endpoint_id, "containers/json"),
            f"List containers on endpoint {endpoint_id}", params={"all": "true"},
        )
        return response.json()

    async def inspect_container(self, endpoint_id, container_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", self._docker(endpoint_id, f"containers/{container_id}/json"),
            f"Inspect container {container_id[:12]}",
        )
        return response.json()

    async def list_images(self, endpoint_id) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET", self._docker(endpoint_id, "images/json"),
            f"List images on endpoint {endpoint_id}", params={"all": "true"},
        )
        return response.json()

    async def inspect_image(self, endpoint_id, image_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", self._docker(endpoint_id, f"images/{image_id}/json"),
            f"Inspect image {image_id}",
        )
        return response.json()

    async def pull_image(self, endpoint_id, image_name: str) -> None:
        """Pull an image, failing on errors reported inside the progress stream.

        The engine answers 200 and streams JSON progress lines even when the pull
        fails halfway, so each line is checked for an error field.
        """
        from_image, tag = split_image_for_pull(image_name)
        context = f"Pull {sanitize_log_message(image_name)}"
        response = await self._request(
            "POST", self._docker(endpoint_id, "images/create"), context,
            params={"fromImage": from_image, "tag": tag}, timeout=PULL_TIMEOUT,
        )

        for line in response.text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError:
                continue
            error = event.get("error") or (event.get("errorDetail") or {}).get("message")
            if error:
                raise RemoteAPIError(f"{context} failed: {error}", status_code=response.status_code, detail=error)

        logger.info(f"Pulled {sanitize_log_message(image_name)} on endpoint {endpoint_id}")

    async def stop_container(self, endpoint_id, container_id: str, timeout: int = STOP_GRACE_SECONDS) -> None:
        """Stop a container. Already stopped (304) is not an error."""
        await self._request(
            "POST", self._docker(endpoint_id, f"containers/{container_id}/stop"),
            f"Stop container {container_id[:12]}", ok_statuses=(304,),
            params={"t": timeout}, timeout=DEFAULT_TIMEOUT + timeout,
        )

    async def remove_container(self, endpoint_id, container_id: str, force: bool = False) -> None:
        await self._request(
            "DELETE", self._docker(endpoint_id, f"containers/{container_id}"),
            f"Remove container {container_id[:12]}", params={"force": "true" if force else "false"},
        )

    async def create_container(self, endpoint_id, config: Dict[str, Any], name: Optional[str] = None) -> Dict[str, Any]:
        """Create a container; returns the engine response ({"Id": ..., "Warnings": [...]})."""
        params = {}
        if name:
            params["name"] = name.lstrip("/")
        response = await self._request(
            "POST", self._docker(endpoint_id, "containers/create"),
            f"Create container {sanitize_log_message(name or '')}", params=params, json=config,
        )
        return response.json()

    async def start_container(self, endpoint_id, container_id: str) -> None:
        """Start a container. Already running (304) is not an error."""
        await self._request(
            "POST", self._docker(endpoint_id, f"containers/{container_id}/start"),
            f"Start container {container_id[:12]}", ok_statuses=(304,),
        )

    async def get_container_logs(self, endpoint_id, container_id: str, tail: int = 100) -> str:
        response = await self._request(
            "GET", self._docker(endpoint_id, f"containers/{container_id}/logs"),
            f"Logs of container {container_id[:12]}",
            params={"stdout": 1, "stderr": 1, "tail": tail, "timestamps": 1},
        )
        return demux_log_stream(response.content)

    async def wait_for_container_stop(
        self, endpoint_id, container_id: str, timeout: float = 30.0, interval: float = 1.0
    ) -> bool:
        """Poll until the container is no longer running (or gone).

        Returns:
            True if it stopped within timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                details = await self.inspect_container(endpoint_id, container_id)
            except NotFoundError:
                return True
            if not details.get("State", {}).get("Running"):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)
