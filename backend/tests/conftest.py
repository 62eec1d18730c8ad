"""Pytest configuration and fixtures."""

import hashlib
import itertools
import os
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing dockwatch.db
# This prevents the module from trying to create /data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

# Set encryption key for tests
from cryptography.fernet import Fernet

if "DOCKWATCH_ENCRYPTION_KEY" not in os.environ:
    os.environ["DOCKWATCH_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

from dockwatch.db import Base
from dockwatch.exceptions import NotFoundError, RemoteAPIError
from dockwatch.models import *  # noqa: F401,F403 Import all models to register them
from dockwatch.models import PortainerInstance
from dockwatch.services.registry_client import ManifestResolution
from dockwatch.services.state_service import StateService


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test engine, for services that open their own sessions."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session with automatic rollback."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def state():
    """Fresh state service per test."""
    return StateService()


@pytest.fixture
async def portainer_instance(db):
    """A Portainer instance owned by user 1."""
    instance = PortainerInstance(
        user_id=1,
        name="Homelab",
        url="https://portainer.example.com",
        username="admin",
        password="secret",
    )
    db.add(instance)
    await db.commit()
    await db.refresh(instance)
    return instance


def make_id(seed: str) -> str:
    """Deterministic 64-char hex ID."""
    return hashlib.sha256(seed.encode()).hexdigest()


def make_digest(seed: str) -> str:
    return f"sha256:{make_id('digest-' + seed)}"


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeDockerEngine:
    """In-memory stand-in for PortainerClient against a single endpoint.

    Containers are stored as engine inspections; listings are derived from
    them. Images are keyed by ID and resolved from tags for create.
    """

    def __init__(self, url: str = "https://portainer.example.com"):
        self.url = url
        self.base_url = url
        self.endpoints = [{"Id": 1, "Name": "local"}]
        self.containers = {}
        self.images = {}
        self.tags = {}
        self.pull_targets = {}
        self.pulled = []
        self.removed = []
        self.created = []
        self.started = []
        self.stopped = []
        self.ip_urls = []
        self.closed = 0
        self.fail_pull = None
        self.exit_on_start = set()
        self.stale_network_modes = 0
        self.inspect_failures = {}
        self._ids = itertools.count(1)

    # Setup helpers

    def add_image(self, tag: str, digest: str, architecture: str = "amd64", variant=None) -> str:
        image_id = f"sha256:{make_id('image-' + tag + digest)}"
        repository = tag.rsplit(":", 1)[0] if ":" in tag.rsplit("/", 1)[-1] else tag
        self.images[image_id] = {
            "Id": image_id,
            "RepoTags": [tag],
            "RepoDigests": [f"{repository}@{digest}"],
            "Os": "linux",
            "Architecture": architecture,
            "Variant": variant,
            "Created": "2025-01-01T00:00:00Z",
            "Size": 1000,
        }
        self.tags[tag] = image_id
        return image_id

    def add_container(
        self,
        name: str,
        image: str,
        network_mode: str = "bridge",
        running: bool = True,
        labels=None,
        container_id=None,
    ) -> str:
        container_id = container_id or make_id("container-" + name)
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Image": self.tags.get(image, ""),
            "Config": {
                "Image": image,
                "Env": ["TZ=UTC"],
                "Labels": labels or {},
                "ExposedPorts": {"80/tcp": {}} if network_mode == "bridge" else None,
            },
            "HostConfig": {
                "NetworkMode": network_mode,
                "RestartPolicy": {"Name": "unless-stopped"},
                "PortBindings": {"80/tcp": [{"HostPort": "8080"}]} if network_mode == "bridge" else None,
                "HostsPath": "/var/lib/docker/containers/x/hosts",
            },
            "NetworkSettings": {"Networks": {"bridge": {"Aliases": [name]}}},
            "State": {"Status": "running" if running else "exited", "Running": running, "ExitCode": 0},
        }
        return container_id

    def container_by_name(self, name: str):
        for details in self.containers.values():
            if details["Name"].lstrip("/") == name:
                return details
        return None

    # PortainerClient surface

    def use_ip_address(self, ip_url):
        self.ip_urls.append(ip_url)
        self.base_url = ip_url or self.url

    async def close(self):
        self.closed += 1

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def list_endpoints(self):
        return list(self.endpoints)

    async def list_containers(self, endpoint_id):
        listing = []
        for details in self.containers.values():
            listing.append({
                "Id": details["Id"],
                "Names": [details["Name"]],
                "Image": details["Config"]["Image"],
                "ImageID": details["Image"],
                "State": details["State"]["Status"],
                "Status": "Up 2 hours" if details["State"]["Running"] else "Exited (0)",
                "Labels": details["Config"].get("Labels") or {},
            })
        return listing

    async def inspect_container(self, endpoint_id, container_id):
        failure = self.inspect_failures.get(container_id)
        if failure is not None:
            raise failure
        for details in self.containers.values():
            if details["Id"] == container_id or details["Id"].startswith(container_id) or (
                details["Name"].lstrip("/") == container_id
            ):
                return details
        raise NotFoundError(f"No such container: {container_id}", status_code=404)

    async def list_images(self, endpoint_id):
        return [
            {"Id": image["Id"], "RepoTags": image["RepoTags"], "Size": image["Size"], "Created": 1700000000}
            for image in self.images.values()
        ]

    async def inspect_image(self, endpoint_id, image_id):
        if image_id not in self.images:
            raise NotFoundError(f"No such image: {image_id}", status_code=404)
        return self.images[image_id]

    async def pull_image(self, endpoint_id, image_name):
        if self.fail_pull:
            raise RemoteAPIError(f"Pull {image_name} failed: {self.fail_pull}", status_code=200)
        self.pulled.append(image_name)
        if image_name in self.pull_targets:
            self.tags[image_name] = self.pull_targets[image_name]

    async def stop_container(self, endpoint_id, container_id, timeout=10):
        details = await self.inspect_container(endpoint_id, container_id)
        details["State"] = {"Status": "exited", "Running": False, "ExitCode": 0}
        self.stopped.append(details["Name"].lstrip("/"))

    async def wait_for_container_stop(self, endpoint_id, container_id, timeout=30.0, interval=1.0):
        return True

    async def remove_container(self, endpoint_id, container_id, force=False):
        details = await self.inspect_container(endpoint_id, container_id)
        del self.containers[details["Id"]]
        self.removed.append(details["Id"])

    async def create_container(self, endpoint_id, config, name=None):
        if name and self.container_by_name(name):
            raise RemoteAPIError(f"Conflict. The container name /{name} is already in use", status_code=409)
        container_id = make_id(f"created-{name}-{next(self._ids)}")
        host_config = dict(config.get("HostConfig") or {})
        network_mode = host_config.get("NetworkMode") or ""
        if network_mode.startswith("container:") and self.stale_network_modes > 0:
            self.stale_network_modes -= 1
            host_config["NetworkMode"] = "container:" + make_id("stale-provider")
        container_config = {
            key: value for key, value in config.items() if key not in ("HostConfig", "NetworkingConfig")
        }
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Image": self.tags.get(config["Image"], ""),
            "Config": container_config,
            "HostConfig": host_config,
            "NetworkSettings": {"Networks": {}},
            "State": {"Status": "created", "Running": False, "ExitCode": 0},
        }
        self.created.append({"name": name, "config": config, "id": container_id})
        return {"Id": container_id, "Warnings": []}

    async def start_container(self, endpoint_id, container_id):
        details = await self.inspect_container(endpoint_id, container_id)
        name = details["Name"].lstrip("/")
        if name in self.exit_on_start:
            details["State"] = {"Status": "exited", "Running": False, "ExitCode": 1}
        else:
            details["State"] = {"Status": "running", "Running": True, "ExitCode": 0}
        self.started.append(name)

    async def get_container_logs(self, endpoint_id, container_id, tail=100):
        return "fatal: configuration file missing"


@pytest.fixture
def engine():
    return FakeDockerEngine()


class FakeRegistry:
    """RegistryClient stand-in returning configured digests per image tag."""

    def __init__(self):
        self.digests = {}
        self.errors = {}
        self.calls = []
        self.version_tags = {}
        self.closed = False

    async def get_platform_specific_digest(self, image_ref, platform):
        self.calls.append((image_ref, str(platform) if platform else None))
        if image_ref in self.errors:
            raise self.errors[image_ref]
        return ManifestResolution(
            digest=self.digests[image_ref],
            tag=image_ref.rsplit(":", 1)[-1],
            is_manifest_list=True,
            platform=platform,
        )

    async def image_exists(self, image_ref):
        return image_ref in self.digests

    async def get_tag_from_digest(self, image_ref, digest):
        return self.version_tags.get(image_ref)

    async def get_tag_publish_date(self, image_ref):
        return None

    async def close(self):
        self.closed = True


@pytest.fixture
def registry():
    return FakeRegistry()


class RecordingDispatcher:
    """Notification dispatcher stand-in that records queued image data."""

    def __init__(self):
        self.queued = []

    async def queue_notification(self, image_data):
        self.queued.append(image_data)
        return True


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
