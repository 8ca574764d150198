"""VisionM job console backend - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visionm.config import settings
from visionm.logger import configure_logging
from visionm.api.deps import TrackerRegistry, set_registry
from visionm.api.v1.router import v1_router
from visionm.api.v1.health import router as health_root_router
from visionm.storage.recovery_store import cleanup_expired

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging(settings.log_level)

    logger.info("Starting VisionM job console")
    logger.info("Job API: %s", settings.job_api_base_url)
    logger.info("Recovery store: %s", settings.recovery_store_dir)

    removed = cleanup_expired()
    if removed:
        logger.info("Removed %d expired recovery file(s)", removed)

    registry = TrackerRegistry()
    set_registry(registry)

    yield

    # Shutdown
    logger.info("Shutting down VisionM job console")
    await registry.close_all()
    set_registry(None)


app = FastAPI(
    title="VisionM Job Console",
    description="Training and inference job orchestration with reload-safe recovery",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow frontend dev server and any configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
