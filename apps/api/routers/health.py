"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from sqlalchemy import text

from config import settings

router = APIRouter()


@router.get("/healthz", response_class=PlainTextResponse)
async def liveness_check():
    """Liveness probe used by the hosting platform."""
    return "ok"


@router.get("/xrpc/_health")
async def version_check():
    """Version probe expected by network services."""
    return {"version": settings.APP_VERSION}


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "version": settings.APP_VERSION,
    }

    try:
        from database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status
