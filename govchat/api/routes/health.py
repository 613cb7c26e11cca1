"""
Health API Routes
=================
Liveness, readiness and metrics for load balancers and scrapers.

Provides:
- /health - Dependency health (503 unless every dependency is healthy)
- /health/detailed - Health, fresh degradation level and breaker stats
- /ready - Readiness (503 when the service is offline)
- /metrics - Prometheus exposition
"""

from fastapi import APIRouter, Depends, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from govchat.api.deps import get_service
from govchat.observability.metrics import METRICS_CONTENT_TYPE
from govchat.resilience.degradation import ServiceLevel
from govchat.resilience.health_monitor import HealthStatus
from govchat.service import ResilienceService


router = APIRouter()


@router.get("/health")
async def health(service: ResilienceService = Depends(get_service)):
    """Run every probe and report overall status."""
    report = await service.health.get_system_health()
    status_code = 200 if report.status == HealthStatus.HEALTHY else 503
    return JSONResponse(status_code=status_code, content=jsonable_encoder(report))


@router.get("/health/detailed")
async def health_detailed(service: ResilienceService = Depends(get_service)):
    """Health report plus a fresh degradation assessment and circuit breaker stats."""
    report = await service.health.get_system_health()
    level = await service.assess()

    return {
        "health": report,
        "degradation": level.to_dict(),
        "circuit_breakers": service.breakers.all_stats(),
        "active_connections": service.active_connections,
        "pending_messages": len(service.queue),
    }


@router.get("/ready")
async def readiness(service: ResilienceService = Depends(get_service)):
    """Ready unless the current level is offline."""
    level = service.get_current_level()
    ready = level.level != ServiceLevel.OFFLINE

    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "ready": ready,
            "level": level.level.value,
            "features": list(level.features),
        },
    )


@router.get("/metrics")
async def metrics(service: ResilienceService = Depends(get_service)):
    """Prometheus text exposition."""
    return Response(content=service.metrics.render(), media_type=METRICS_CONTENT_TYPE)
