"""
Health check endpoints with database pool and session supervisor status.
"""

import time

from fastapi import APIRouter, Request

from support_monitor.config import settings
from support_monitor.db.pool import db_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "support-monitor"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness check: database pool plus live session counts."""
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
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                }
            )

        if db_health.get("warnings"):
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

    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        checks["sessions"] = {"ok": False, "error": "Session supervisor not started"}
        overall_ok = False
    else:
        checks["sessions"] = {
            "ok": True,
            "active_sessions": len(supervisor.get_active_sessions()),
            "tracked_sessions": len(supervisor.registry),
        }

    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    if not settings.NETWORK_CLIENT_FACTORY:
        config_issues.append("NETWORK_CLIENT_FACTORY not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
