"""
Health check endpoints.
/health always returns 200 and reports dependency state in the body.
/health/ready returns 503 until the database and Redis both answer.
"""

from typing import Optional

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _database_ok() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except (SQLAlchemyError, OSError) as e:
        return False, str(e)[:200]


def _state_store(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    return pipeline.store if pipeline is not None else None


@router.get("/health")
async def health_check(request: Request):
    """
    Liveness: ALWAYS 200 so orchestrator health checks pass while a
    dependency is down. The body says what is degraded.
    """
    db_ok, db_error = await _database_ok()
    store = _state_store(request)
    store_degraded = store.degraded if store is not None else True

    response = {
        "status": "healthy" if db_ok and not store_degraded else "degraded",
        "version": settings.APP_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "state_store": "degraded" if store_degraded else "connected",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response):
    """Readiness check: 200 only if all dependencies are available."""
    db_ok, _ = await _database_ok()
    store = _state_store(request)
    store_ok = await store.recover() if store is not None else False

    ready = db_ok and store_ok
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"ready": ready, "database": db_ok, "state_store": store_ok}
