"""
Health Check Routes
Service health monitoring endpoints
Source: https://microservices.io/patterns/observability/health-check-api.html
Verified: 2026-10-16
"""

from typing import Any

from fastapi import APIRouter, Request

from src.core.enums import ProviderStatus
from src.db.connection import check_db_connection
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "nphies-communication-api"


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """
    Basic health check endpoint.

    Evidence: Health check pattern for load balancers and monitoring
    Source: https://docs.docker.com/engine/reference/builder/#healthcheck
    Verified: 2026-10-16
    """
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request) -> dict[str, Any]:
    """
    Detailed health check with database and NPHIES gateway status.

    The gateway is degraded after repeated failures; that does not make the
    service unhealthy, an unreachable database does.
    """
    db_healthy = await check_db_connection()

    gateway = getattr(request.app.state, "nphies_gateway", None)
    providers: dict[str, Any] = {}
    gateway_status = "not_initialized"
    if gateway is not None:
        providers = {name: health.to_dict() for name, health in gateway.get_all_status().items()}
        statuses = {health["status"] for health in providers.values()}
        if ProviderStatus.UNHEALTHY.value in statuses:
            gateway_status = "unhealthy"
        elif ProviderStatus.DEGRADED.value in statuses:
            gateway_status = "degraded"
        else:
            gateway_status = "healthy"

    schedulers = getattr(request.app.state, "poll_schedulers", None)
    poll_schedulers = schedulers.summary() if schedulers is not None else {}

    if not db_healthy:
        overall_status = "unhealthy"
    elif gateway_status in ("degraded", "unhealthy"):
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return {
        "status": overall_status,
        "service": SERVICE_NAME,
        "checks": {
            "database": "healthy" if db_healthy else "unhealthy",
            "nphies_gateway": gateway_status,
        },
        "providers": providers,
        "poll_schedulers": poll_schedulers,
    }
