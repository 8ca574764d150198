"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from visionm.api import deps

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and tracker counts."""
    registry = deps.current_registry()
    return {
        "status": "healthy" if registry is not None else "starting",
        "trackers": len(registry) if registry is not None else 0,
        "polling": registry.polling_count() if registry is not None else 0,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
