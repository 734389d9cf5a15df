# app/routes/health.py
"""
Liveness, readiness and pipeline health endpoints.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.services.infrastructure.encryption_service import validate_encryption_config
from app.services.infrastructure.redis_client import fast_redis
from app.services.outbox_service import outbox_service
from app.services.token_service import token_service

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "integration-core"}


@router.get("/readyz")
async def readyz():
    """Readiness check across Redis, the database pool and configuration."""
    checks = {}
    overall_ok = True

    # 1) Redis
    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.time() - t0) * 1000, 1)}
        overall_ok = overall_ok and redis_ok
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {"ok": is_healthy, "latency_ms": round((time.time() - t0) * 1000, 1)}
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy
    except Exception as e:
        checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 3) Configuration
    config_issues = []
    if not settings.ENCRYPTION_KEY or not validate_encryption_config():
        config_issues.append("ENCRYPTION_KEY missing or invalid")
    if not settings.AUTH_JWKS_URL:
        config_issues.append("AUTH_JWKS_URL not set")

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


@router.get("/health/outbox")
async def outbox_health():
    """Undelivered outbox backlog; a growing number means the publisher is stuck."""
    try:
        return {"ok": True, "undelivered": await outbox_service.pending_count()}
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {e}"}


@router.get("/health/connections")
async def connections_health():
    """Connection counts by status and the active refresh window."""
    try:
        return await token_service.health_check()
    except Exception as e:
        return {"healthy": False, "error": f"{type(e).__name__}: {e}"}
