"""Health check endpoints with graceful degradation."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from chunked_uploads.config import get_settings
from chunked_uploads.rate_limit import limiter
from chunked_uploads.services.container import ServiceContainer, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])
settings = get_settings()


class ServiceStatus(BaseModel):
    """Status of an individual backend."""
    name: str
    status: str  # "healthy", "unhealthy"
    message: Optional[str] = None


class HealthCheck(BaseModel):
    """Overall health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    version: str
    services: dict[str, str]


async def check_component(component) -> ServiceStatus:
    """Check one backend; a failed check is reported, never raised."""
    try:
        await component.is_ready()
        return ServiceStatus(name=component.name, status="healthy")
    except Exception as e:
        logger.warning(f"{component.name} health check failed: {e}")
        return ServiceStatus(name=component.name, status="unhealthy", message=str(e))


async def check_all(services: ServiceContainer) -> list[ServiceStatus]:
    return [await check_component(c) for c in services.components()]


@router.get("", response_model=HealthCheck)
async def health_check(services: ServiceContainer = Depends(get_services)) -> HealthCheck:
    """
    Check health of all backends.

    Returns overall health status and individual backend statuses.
    """
    statuses = await check_all(services)
    healthy_count = sum(1 for s in statuses if s.status == "healthy")

    if healthy_count == len(statuses):
        overall = "healthy"
    elif healthy_count >= 1:
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthCheck(
        status=overall,
        version=settings.app_version,
        services={s.name: s.status for s in statuses},
    )


@router.get("/live")
async def liveness() -> dict:
    """
    Kubernetes/Docker liveness check.

    Just confirms the application process is running and can respond to HTTP.
    This should NOT check external dependencies - that's what readiness is for.
    """
    return {"status": "alive"}


@router.get("/ready")
async def readiness(services: ServiceContainer = Depends(get_services)) -> dict:
    """
    Kubernetes/Docker readiness check.

    A chunk request touches every backend, so all of them must be reachable.
    Returns 503 otherwise.
    """
    statuses = await check_all(services)
    failing = [s for s in statuses if s.status != "healthy"]

    if failing:
        raise HTTPException(
            status_code=503,
            detail="Not ready: " + "; ".join(f"{s.name}: {s.message}" for s in failing),
        )

    return {"status": "ready"}


@router.get("/detailed")
@limiter.limit("60/minute")
async def detailed_health(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict:
    """
    Detailed health check with full backend information.

    Note: host/port details are intentionally omitted to avoid
    exposing internal infrastructure information.
    """
    statuses = await check_all(services)

    return {
        "version": settings.app_version,
        "services": {
            s.name: {"status": s.status, "message": s.message} for s in statuses
        },
    }
