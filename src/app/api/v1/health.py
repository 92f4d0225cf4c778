"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
Readiness verifies the CRM services were initialized at startup; it does
not call out to any CRM backend.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.app.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check -- just that the server is running."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 once the CRM services are on app.state, else 503."""
    state = request.app.state
    checks: dict = {
        "account_manager": "ok" if getattr(state, "crm_account_manager", None) else "missing",
        "sync_service": "ok" if getattr(state, "crm_sync_service", None) else "missing",
        "webhook_handler": "ok" if getattr(state, "crm_webhook_handler", None) else "missing",
    }
    all_healthy = all(value == "ok" for value in checks.values())

    if all_healthy:
        checks["accounts"] = len(state.crm_account_manager.get_all_accounts())

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
