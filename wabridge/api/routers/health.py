"""Health check API router."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from wabridge.api.dependencies import get_runtime
from wabridge.infra.database import get_db_session
from wabridge.infra.metrics import get_metrics_response
from wabridge.services.runtime import Runtime

router = APIRouter()


@router.get("/health", tags=["Health"])
async def health_check():
    """Combined health check endpoint."""
    return {
        "status": "ok",
        "service": "wabridge",
        "version": "1.0.0",
    }


@router.get("/health/live", tags=["Health"])
async def liveness_probe():
    """Liveness probe - indicates if the process is running."""
    return {"status": "alive"}


@router.get("/health/ready", tags=["Health"])
async def readiness_probe(runtime: Runtime = Depends(get_runtime)):
    """Readiness probe - checks Redis and database connectivity."""
    checks = {"redis": await runtime.queue.ping(), "database": True}
    try:
        with get_db_session() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        checks["database"] = False

    if all(checks.values()):
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


@router.get("/metrics", tags=["Health"])
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()
