"""Metric update and value endpoints used by reporting agents."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from ...api.dependencies import get_metric_service
from ...domain.metrics import (
    Metric,
    MetricServiceError,
    MetricUpdateService,
    parse_metric,
)
from ...infra.logging import get_logger

router = APIRouter(tags=["metrics"])
logger = get_logger(__name__)


class MetricPayload(BaseModel):
    """JSON wire form of a metric."""

    model_config = ConfigDict(extra="forbid")

    id: str
    type: str
    delta: Optional[int] = None
    value: Optional[float] = None
    hash: Optional[str] = None

    def to_metric(self) -> Metric:
        return Metric(
            id=self.id,
            kind=self.type,
            delta=self.delta,
            value=self.value,
            signature=self.hash or None,
        )


class MetricBatchResponse(BaseModel):
    metrics: List[MetricPayload] = Field(default_factory=list, alias="Metrics")

    model_config = ConfigDict(populate_by_name=True)


def _to_payload(metric: Metric) -> MetricPayload:
    return MetricPayload(**metric.to_payload())


def _handle_service_error(exc: MetricServiceError) -> HTTPException:
    return HTTPException(
        status_code=int(exc.status_code),
        detail={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


@router.post("/update/{metric_type}/{metric_id}/{metric_value}")
def update_metric(
    metric_type: str,
    metric_id: str,
    metric_value: str,
    service: MetricUpdateService = Depends(get_metric_service),
) -> Response:
    try:
        metric = parse_metric(metric_id, metric_type, metric_value)
        service.apply_one(metric, verify_signature=False)
    except MetricServiceError as exc:
        logger.info(
            "metric_update_rejected",
            extra={"error_code": exc.error_code, **exc.details},
        )
        raise _handle_service_error(exc) from exc
    return Response(status_code=200)


@router.get("/value/{metric_type}/{metric_id}", response_class=PlainTextResponse)
def metric_value(
    metric_type: str,
    metric_id: str,
    service: MetricUpdateService = Depends(get_metric_service),
) -> PlainTextResponse:
    try:
        metric = service.read(metric_type, metric_id)
    except MetricServiceError as exc:
        raise _handle_service_error(exc) from exc
    return PlainTextResponse(metric.display_value())


@router.post(
    "/update/",
    response_model=MetricPayload,
    response_model_exclude_none=True,
)
def update_metric_json(
    payload: MetricPayload,
    service: MetricUpdateService = Depends(get_metric_service),
) -> MetricPayload:
    try:
        stored = service.apply_one(payload.to_metric())
    except MetricServiceError as exc:
        logger.info(
            "metric_update_rejected",
            extra={"error_code": exc.error_code, **exc.details},
        )
        raise _handle_service_error(exc) from exc
    return _to_payload(stored)


@router.post(
    "/value/",
    response_model=MetricPayload,
    response_model_exclude_none=True,
)
def metric_value_json(
    payload: MetricPayload,
    service: MetricUpdateService = Depends(get_metric_service),
) -> MetricPayload:
    try:
        metric = service.read(
            payload.type, payload.id, with_signature=service.signing_enabled
        )
    except MetricServiceError as exc:
        raise _handle_service_error(exc) from exc
    return _to_payload(metric)


@router.post(
    "/updates/",
    response_model=MetricBatchResponse,
    response_model_exclude_none=True,
    response_model_by_alias=True,
)
def update_metrics_batch(
    payload: List[MetricPayload],
    service: MetricUpdateService = Depends(get_metric_service),
) -> MetricBatchResponse:
    try:
        service.apply_batch(item.to_metric() for item in payload)
        stored = service.list_metrics(with_signature=service.signing_enabled)
    except MetricServiceError as exc:
        logger.info(
            "metric_batch_rejected",
            extra={"error_code": exc.error_code, **exc.details},
        )
        raise _handle_service_error(exc) from exc
    return MetricBatchResponse(metrics=[_to_payload(metric) for metric in stored])


@router.get("/")
def list_metrics(
    service: MetricUpdateService = Depends(get_metric_service),
) -> Dict[str, Any]:
    try:
        snapshot = service.read_all()
    except MetricServiceError as exc:
        raise _handle_service_error(exc) from exc
    return snapshot.to_payload()
