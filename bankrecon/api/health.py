"""
Health check endpoint.
/health always returns 200 so the platform healthcheck passes while the DB is down;
/health/ready is the strict check.
"""

from fastapi import APIRouter
from sqlalchemy import text

from bankrecon.config import settings
from bankrecon.models.database import async_session_factory

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness plus a best-effort DB check."""
    db_ok = False
    db_error = None
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            db_ok = result.scalar() == 1
    except Exception as e:
        db_error = str(e)[:200]

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "pipeline_version": settings.PIPELINE_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "text_model": settings.TEXT_MODEL_NAME,
        "vision_model": settings.VISION_MODEL_NAME,
    }
    if db_error:
        response["database_error"] = db_error

    return response


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: ready only if the database answers."""
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"ready": True}
    except Exception:
        return {"ready": False}
