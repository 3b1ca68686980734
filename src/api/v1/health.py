"""Health check endpoints for the dispatch API.

Provides liveness and readiness probes for container deployments.  The
readiness check verifies the record store answers reads and writes.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

from src.services.errors import DispatchError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual component statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.

    Returns 200 if the application process is running and able to
    handle requests.  Does *not* check downstream dependencies.
    """
    start_time: float = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(uptime, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    Round-trips a marker through the record store so the load balancer
    only routes traffic to instances that can persist cases.
    """
    checks: dict[str, str] = {}
    all_ok = True

    service = getattr(request.app.state, "dispatch", None)
    if service is None:
        checks["dispatch"] = "not_initialised"
        all_ok = False
    else:
        checks["dispatch"] = "ok"
        try:
            await service.store.claim("_health_check", ttl_seconds=10)
            await service.store.delete("_health_check")
            checks["store"] = f"ok ({service.store.backend_name})"
        except DispatchError as exc:
            logger.warning("api.health.store_check_failed", error=str(exc))
            checks["store"] = f"error: {exc!s}"
            all_ok = False

    return ReadinessResponse(
        status="ready" if all_ok else "degraded",
        checks=checks,
    )
