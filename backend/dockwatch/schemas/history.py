"""Pydantic schemas for upgrade history."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class UpgradeHistorySchema(BaseModel):
    """Upgrade history response schema."""

    id: int
    user_id: Optional[int] = None
    portainer_instance_id: Optional[int] = None
    portainer_url: str
    endpoint_id: str
    container_id: str
    container_name: str
    new_container_id: Optional[str] = None
    old_image: Optional[str] = None
    new_image: Optional[str] = None
    old_digest: Optional[str] = None
    new_digest: Optional[str] = None
    status: str
    failed_step: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    triggered_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UpgradeHistoryPage(BaseModel):
    """Paginated upgrade history."""

    items: List[UpgradeHistorySchema] = Field(default_factory=list)
    total: int = 0
    skip: int = 0
    limit: int = 50


class BatchRunSchema(BaseModel):
    """One scheduled refresh run."""

    id: int
    job_type: str
    status: str
    containers_checked: int = 0
    updates_found: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
