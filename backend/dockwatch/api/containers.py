"""Containers API endpoints."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.db import get_db
from dockwatch.schemas.container import (
    ContainerBundle,
    UnusedImageSchema,
    UpgradeRequest,
    UpgradeResultSchema,
)
from dockwatch.services.container_query_service import ContainerQueryService
from dockwatch.services.state_service import StateService, get_state_service
from dockwatch.services.upgrade_orchestrator import ContainerUpgradeOrchestrator
from dockwatch.utils.error_handling import safe_error_response
from dockwatch.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=ContainerBundle)
async def get_containers(
    refresh: bool = Query(False, description="Contact Portainer and the registries instead of using the cache"),
    portainer_url: Optional[str] = Query(None, description="Limit the refresh to one Portainer instance"),
    user_id: Optional[int] = Query(None, description="Only instances owned by this user"),
    db: AsyncSession = Depends(get_db),
    state: StateService = Depends(get_state_service),
) -> Dict[str, Any]:
    """Get containers with their update status, grouped by stack.

    Without ``refresh`` the stored snapshot is returned. A refresh that hit a
    registry rate limit is aborted with 429 and nothing is persisted.
    """
    try:
        service = ContainerQueryService(db, state)
        return await service.get_all_containers_with_updates(
            force_refresh=refresh,
            filter_instance_url=portainer_url,
            user_id=user_id,
        )
    except OperationalError as e:
        safe_error_response(logger, e, "Database error while loading containers")


@router.get("/unused-images", response_model=List[UnusedImageSchema])
async def get_unused_images(
    user_id: Optional[int] = Query(None, description="Only instances owned by this user"),
    db: AsyncSession = Depends(get_db),
    state: StateService = Depends(get_state_service),
) -> List[Dict[str, Any]]:
    """List images that no container on their endpoint references."""
    service = ContainerQueryService(db, state)
    return await service.get_unused_images(user_id)


@router.post("/{container_id}/upgrade", response_model=UpgradeResultSchema)
async def upgrade_container(
    container_id: str,
    request: UpgradeRequest,
    db: AsyncSession = Depends(get_db),
    state: StateService = Depends(get_state_service),
) -> Dict[str, Any]:
    """Pull the newest image for the container's tag and recreate it.

    Returns 409 while another upgrade of the same container is running. A
    failed step answers 500 with the step name and recent container logs;
    the container is left as it is.
    """
    logger.info(
        f"Upgrade requested for {sanitize_log_message(container_id)} "
        f"({sanitize_log_message(request.image)}) on {sanitize_log_message(request.portainer_url)}"
    )
    orchestrator = ContainerUpgradeOrchestrator(db, state)
    result = await orchestrator.upgrade_single_container(
        request.portainer_url,
        request.endpoint_id,
        container_id,
        request.image,
        user_id=request.user_id,
    )
    return result.to_dict()
