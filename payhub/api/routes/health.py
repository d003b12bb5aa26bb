import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from payhub.db import ping

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 while draining after SIGTERM."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "payhub"},
        )
    return {"status": "healthy", "service": "payhub"}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness check - verifies the database is reachable."""
    checks = {"database": False}

    try:
        await ping(request.app.state.session_factory)
        checks["database"] = True
    except (SQLAlchemyError, OSError, AttributeError) as e:
        logger.error("database_health_check_failed", error=str(e))

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
