"""Health check endpoint."""

from fastapi import APIRouter

from mediaflow.core.config import settings

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Return service status, name and version.

    Kept free of I/O so it answers during startup.
    """
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
    }
