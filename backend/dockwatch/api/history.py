"""History API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from dockwatch.db import get_db
from dockwatch.models import BatchRun, UpgradeHistory
from dockwatch.schemas.history import BatchRunSchema, UpgradeHistoryPage, UpgradeHistorySchema
from dockwatch.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/upgrades", response_model=UpgradeHistoryPage)
async def get_upgrade_history(
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(50, ge=1, le=500, description="Maximum number of records to return"),
    status: Optional[str] = Query(None, description="Filter by status (in_progress, success, failed)"),
    container_name: Optional[str] = Query(None, description="Filter by container name"),
    user_id: Optional[int] = Query(None, description="Filter by user"),
    db: AsyncSession = Depends(get_db),
) -> UpgradeHistoryPage:
    """Get upgrade history, newest first."""
    try:
        query = select(UpgradeHistory)
        if status:
            query = query.where(UpgradeHistory.status == status)
        if container_name:
            query = query.where(UpgradeHistory.container_name == container_name)
        if user_id is not None:
            query = query.where(UpgradeHistory.user_id == user_id)

        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(
            query.order_by(UpgradeHistory.started_at.desc(), UpgradeHistory.id.desc())
            .offset(skip)
            .limit(limit)
        )
        items = [UpgradeHistorySchema.model_validate(row) for row in result.scalars().all()]
        return UpgradeHistoryPage(items=items, total=total or 0, skip=skip, limit=limit)
    except OperationalError as e:
        safe_error_response(logger, e, "Database error while loading upgrade history")


@router.get("/batch-runs", response_model=List[BatchRunSchema])
async def get_batch_runs(
    limit: int = Query(20, ge=1, le=200, description="Maximum number of runs to return"),
    db: AsyncSession = Depends(get_db),
) -> List[BatchRunSchema]:
    """Get the most recent scheduled refresh runs."""
    try:
        result = await db.execute(
            select(BatchRun).order_by(BatchRun.started_at.desc(), BatchRun.id.desc()).limit(limit)
        )
        return [BatchRunSchema.model_validate(run) for run in result.scalars().all()]
    except OperationalError as e:
        safe_error_response(logger, e, "Database error while loading batch runs")
