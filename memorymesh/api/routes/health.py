"""
Health check routes.
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import Response

from memorymesh import __version__
from memorymesh.api.dependencies import AppCache, Registry
from memorymesh.observability.metrics import get_metrics
from memorymesh.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Report broker and cache status.",
)
async def health_check(registry: Registry, cache: AppCache) -> HealthResponse:
    """
    Perform a health check.

    The service is "healthy" with a connected broker or in memory mode, and
    "degraded" when running without one. Degraded still serves requests.
    """
    broker = registry.broker_status
    healthy = broker in ("connected", "memory", "pending")

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        broker=broker,
        cache=cache.shared_status,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(registry: Registry) -> dict:
    """
    Kubernetes readiness probe endpoint.

    Ready once queue initialization has finished, with or without a broker.
    """
    return {"ready": registry.initialized, "degraded": registry.degraded}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
