"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.expense_sync.config import get_settings
from src.expense_sync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: database reachable, and which integrations are configured."""
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    checks["netsuite"] = "configured" if getattr(request.app.state, "erp_adapter", None) else "not_configured"
    checks["bill"] = "configured" if getattr(request.app.state, "card_adapter", None) else "not_configured"

    ready = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
