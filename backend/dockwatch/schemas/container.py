"""Pydantic schemas for containers."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ContainerSnapshotSchema(BaseModel):
    """Container response schema."""

    id: int
    user_id: int
    portainer_instance_id: int
    portainer_url: str
    endpoint_id: str
    container_id: str
    container_name: str
    image_name: str
    image_repo: str
    current_digest: Optional[str] = None
    current_tag: Optional[str] = None
    latest_digest: Optional[str] = None
    latest_tag: Optional[str] = None
    latest_version: Optional[str] = None
    latest_publish_date: Optional[str] = None
    has_update: bool = False
    exists_in_docker_hub: bool = False
    check_error: Optional[str] = None
    stack_name: Optional[str] = None
    uses_network_mode: bool = False
    provides_network: bool = False
    state: Optional[str] = None
    status: Optional[str] = None
    image_created_date: Optional[str] = None
    last_seen_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ContainerWithInstance(ContainerSnapshotSchema):
    """Container as returned in a bundle, with the owning instance's display name."""

    portainer_name: Optional[str] = None


class StackGroup(BaseModel):
    """Containers deployed together (Compose project or Swarm stack)."""

    name: str
    containers: List[ContainerWithInstance] = Field(default_factory=list)


class InstanceSummary(BaseModel):
    """Per-instance counts shown above the container list."""

    id: int
    name: str
    url: str
    containers: int = 0
    with_updates: int = 0
    up_to_date: int = 0


class RefreshError(BaseModel):
    """A container or instance that could not be checked during a refresh."""

    portainer_url: str
    container_name: Optional[str] = None
    error: str


class ContainerBundle(BaseModel):
    """Response of GET /containers."""

    grouped: bool = True
    stacks: List[StackGroup] = Field(default_factory=list)
    containers: List[ContainerWithInstance] = Field(default_factory=list)
    portainer_instances: List[InstanceSummary] = Field(default_factory=list)
    unused_images_count: int = 0
    partial: bool = False
    errors: List[RefreshError] = Field(default_factory=list)


class UnusedImageSchema(BaseModel):
    """Image present on an endpoint that no container references."""

    id: str
    repo_tags: List[str] = Field(default_factory=list)
    size: int = 0
    created: Optional[int] = None
    portainer_url: str
    endpoint_id: str
    portainer_name: Optional[str] = None


class UpgradeRequest(BaseModel):
    """Body of POST /containers/{container_id}/upgrade."""

    portainer_url: str = Field(..., min_length=1)
    endpoint_id: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1, description="Image reference to pull, e.g. nginx:1.27")
    user_id: Optional[int] = None


class UpgradeResultSchema(BaseModel):
    """Outcome of a container upgrade."""

    success: bool
    container_id: str
    container_name: str
    new_container_id: Optional[str] = None
    image: str
    old_digest: Optional[str] = None
    new_digest: Optional[str] = None
    dependents_reconnected: List[str] = Field(default_factory=list)
    dependents_failed: List[str] = Field(default_factory=list)
    duration_ms: int = 0
    history_id: Optional[int] = None
    message: Optional[str] = None


class UpgradeFailureDetail(BaseModel):
    """Error body returned when an upgrade step fails."""

    detail: str
    step: Optional[str] = None
    logs: Optional[str] = None
