"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready) and background job
status (/health/jobs). The readiness check also reports which optional
integrations are configured.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.crm.config import get_settings
from src.crm.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    checks["smtp"] = "ok" if settings.smtp_configured else "not_configured"
    checks["twilio"] = "ok" if settings.twilio_configured else "not_configured"
    checks["stripe"] = "ok" if settings.stripe_configured else "not_configured"
    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 when the database answers, 503 otherwise.

    Unconfigured mail, SMS or payment providers degrade features but do not
    make the instance unready.
    """
    checks = await _check_dependencies()
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )


@router.get("/health/jobs")
async def background_jobs_status(request: Request):
    """Per-runner state of the background batch loops."""
    jobs = getattr(request.app.state, "background_jobs", None)
    if jobs is None:
        return {"status": "stopped", "runners": []}
    return {
        "status": "running",
        "runners": [
            {"name": runner.name, "running": runner.running, "in_flight": runner.in_flight}
            for runner in jobs.runners
        ],
    }
