# outreach/routes/health.py
"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from outreach.config import settings
from outreach.db.pool import db_health_check
from outreach.infrastructure.observability.logging import SERVICE_NAME

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/readyz")
async def readyz():
    """
    Readiness check: database pool plus required configuration.
    """
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            checks["database"].update(db_health["pool_stats"])

        if "warnings" in db_health:
            checks["database"]["warnings"] = db_health["warnings"]

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    config_issues = []
    if not settings.CRON_SECRET:
        config_issues.append("CRON_SECRET not set")
    if not settings.OPENAI_API_KEY:
        # Drafts still generate, as review-only placeholders
        config_issues.append("OPENAI_API_KEY not set")

    checks["configuration"] = {
        "ok": bool(settings.CRON_SECRET),
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and checks["configuration"]["ok"]

    body = {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
