"""System API endpoints."""

from typing import Any, Dict

from fastapi import APIRouter

from dockwatch.services.scheduler import scheduler_service

router = APIRouter()


@router.get("/health")
async def health_check() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "dockwatch"}


@router.get("/scheduler/status")
async def get_scheduler_status() -> Dict[str, Any]:
    """Scheduled refresh status and next run time."""
    return scheduler_service.get_status()
