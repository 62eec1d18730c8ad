"""Dockwatch - container update dashboard for Portainer."""

import logging
import os
import tomllib
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dockwatch.db import AsyncSessionLocal, init_db
from dockwatch.exceptions import DockwatchError
from dockwatch.services.notifications.dispatcher import get_notification_dispatcher
from dockwatch.services.scheduler import scheduler_service
from dockwatch.services.settings_service import SettingsService
from dockwatch.services.state_service import get_state_service
from dockwatch.services.upgrade_orchestrator import ContainerUpgradeOrchestrator
from dockwatch.utils.error_handling import error_body, status_code_for
from dockwatch.utils.security import sanitize_log_message


def get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    try:
        # pyproject.toml sits at the repository root, two levels above the package
        pyproject_path = Path(__file__).resolve().parent.parent.parent / "pyproject.toml"
        if not pyproject_path.exists():
            logger.warning(f"pyproject.toml not found at {pyproject_path}")
            return "0.0.0-dev"

        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except (FileNotFoundError, KeyError) as e:
        logger.warning(f"Could not read version from pyproject.toml: {e}")
        return "0.0.0-dev"


# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class EndpointFilter(logging.Filter):
    """Filter to exclude specific endpoints from Granian access logs."""

    def __init__(self, excluded_paths: list[str]) -> None:
        super().__init__()
        self.excluded_paths = excluded_paths

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(path in message for path in self.excluded_paths)


logging.getLogger("granian.access").addFilter(EndpointFilter(["/health"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting Dockwatch...")

    await init_db()
    logger.info("Database initialized")

    async with AsyncSessionLocal() as db:
        await SettingsService.init_defaults(db)
        logger.info("Default settings initialized")

        # History rows left in progress by a crash can never complete
        await ContainerUpgradeOrchestrator.mark_stale_upgrades_failed(db)

        state = get_state_service()
        state.configure(
            token_ttl_seconds=await SettingsService.get_int(db, "registry_token_cache_minutes", 5) * 60,
            digest_ttl_seconds=await SettingsService.get_int(db, "registry_digest_cache_minutes", 30) * 60,
            stale_lock_seconds=await SettingsService.get_int(db, "upgrade_lock_stale_minutes", 10) * 60,
        )

    await scheduler_service.start()

    yield

    await scheduler_service.stop()
    await get_notification_dispatcher(get_state_service()).stop()
    logger.info("Shutting down Dockwatch...")


app = FastAPI(
    title="Dockwatch",
    description="Container update dashboard for Portainer",
    version=get_version(),
    lifespan=lifespan,
)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

cors_origins_env = os.getenv("CORS_ORIGINS")
if cors_origins_env:
    if cors_origins_env == "*":
        cors_origins = ["*"]
        logger.warning("CORS configured with wildcard (*) - not recommended for production")
    else:
        cors_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
        logger.info(f"CORS origins from environment: {cors_origins}")
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Cannot use allow_credentials=True with allow_origins=["*"]
    allow_credentials=cors_origins != ["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept"],
)


@app.exception_handler(DockwatchError)
async def dockwatch_exception_handler(request: Request, exc: DockwatchError):
    """Map application errors to status codes."""
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {sanitize_log_message(str(exc))}")
    return JSONResponse(status_code=status_code, content=error_body(exc))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Generic exception handler to prevent stack trace exposure.

    In DEBUG mode (DOCKWATCH_DEBUG=true), detailed errors are shown for development.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {sanitize_log_message(str(exc))}",
        exc_info=True,
    )

    if os.getenv("DOCKWATCH_DEBUG", "false").lower() == "true":
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__, "debug": True},
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please contact support if this persists."},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "dockwatch"}


from dockwatch.api import api_router  # noqa: E402

app.include_router(api_router)


if __name__ == "__main__":
    import subprocess
    import sys

    # Same server as production (Granian)
    cmd = [
        "granian",
        "--interface",
        "asgi",
        "--host",
        os.getenv("HOST", "0.0.0.0"),
        "--port",
        os.getenv("PORT", "8788"),
        "dockwatch.main:app",
    ]

    sys.exit(subprocess.run(cmd).returncode)
