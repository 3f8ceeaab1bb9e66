"""Liveness endpoints for the collector and its storage."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response

from ...api.dependencies import get_metric_service, get_settings
from ...config import Settings
from ...domain.metrics import MetricUpdateService, StorageUnavailableError
from ...domain.metrics.relational import PING_TIMEOUT_SECONDS
from ...infra.logging import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/ping")
def ping(service: MetricUpdateService = Depends(get_metric_service)) -> Response:
    """Probe the metric storage within a one second budget."""

    try:
        service.ping(timeout=PING_TIMEOUT_SECONDS)
    except StorageUnavailableError as exc:
        logger.warning("metric_storage_ping_failed", extra={"error": exc.message})
        raise HTTPException(
            status_code=int(exc.status_code),
            detail={"error_code": exc.error_code, "message": exc.message},
        ) from exc
    return Response(status_code=200)


@router.get("/api/healthz")
def healthcheck(
    settings: Settings = Depends(get_settings),
    service: MetricUpdateService = Depends(get_metric_service),
) -> dict[str, Any]:
    """Return coarse-grained collector readiness information."""

    return {
        "status": "ok",
        "environment": settings.environment,
        "metricStore": service.storage.backend_name,
        "signing": service.signing_enabled,
    }
