"""API routers for Dockwatch."""

from fastapi import APIRouter
from dockwatch.api import containers, history, discord, system

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(containers.router, prefix="/containers", tags=["containers"])
api_router.include_router(history.router, prefix="/history", tags=["history"])
api_router.include_router(discord.router, prefix="/discord", tags=["discord"])
api_router.include_router(system.router, tags=["system"])

__all__ = ["api_router"]
