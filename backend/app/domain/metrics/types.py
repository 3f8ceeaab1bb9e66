"""Shared metric domain types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, Iterator, Optional


class MetricKind(str, Enum):
    """Enumerates the two supported metric kinds."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class Metric:
    """A single observation keyed by ``(kind, id)``.

    Counters carry ``delta``; gauges carry ``value``. Instances are immutable so
    a metric handed to a caller can never alias backend state.
    """

    id: str
    kind: str
    delta: Optional[int] = None
    value: Optional[float] = None
    signature: Optional[str] = None

    @property
    def is_counter(self) -> bool:
        return self.kind == MetricKind.COUNTER.value

    def display_value(self) -> str:
        if self.kind == MetricKind.COUNTER.value and self.delta is not None:
            return str(self.delta)
        if self.kind == MetricKind.GAUGE.value and self.value is not None:
            text = repr(float(self.value))
            return text[:-2] if text.endswith(".0") else text
        return ""

    def to_payload(self, *, include_signature: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "type": self.kind}
        if self.delta is not None:
            payload["delta"] = self.delta
        if self.value is not None:
            payload["value"] = self.value
        if include_signature and self.signature:
            payload["hash"] = self.signature
        return payload


@dataclass
class MetricSet:
    """Full snapshot of the store: counter id -> metric, gauge id -> metric."""

    counter: Dict[str, Metric] = field(default_factory=dict)
    gauge: Dict[str, Metric] = field(default_factory=dict)

    def bucket(self, kind: str, metric_id: str = "") -> Dict[str, Metric]:
        if kind == MetricKind.COUNTER.value:
            return self.counter
        if kind == MetricKind.GAUGE.value:
            return self.gauge
        raise InvalidMetricKindError(kind, metric_id)

    def copy(self) -> "MetricSet":
        return MetricSet(counter=dict(self.counter), gauge=dict(self.gauge))

    def __iter__(self) -> Iterator[Metric]:
        yield from self.counter.values()
        yield from self.gauge.values()

    def __len__(self) -> int:
        return len(self.counter) + len(self.gauge)

    def to_payload(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return {
            "counter": {
                key: metric.to_payload(include_signature=False)
                for key, metric in self.counter.items()
            },
            "gauge": {
                key: metric.to_payload(include_signature=False)
                for key, metric in self.gauge.items()
            },
        }


class MetricServiceError(Exception):
    """Domain exception propagated to API handlers."""

    status_code = HTTPStatus.NOT_IMPLEMENTED
    error_code = "METRIC-ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class _MetricError(MetricServiceError):
    def __init__(self, kind: str, metric_id: str, message: str) -> None:
        super().__init__(
            f"[{kind}][{metric_id}] {message}",
            details={"type": kind, "id": metric_id},
        )
        self.kind = kind
        self.metric_id = metric_id


class InvalidMetricKindError(_MetricError):
    status_code = HTTPStatus.NOT_IMPLEMENTED
    error_code = "METRIC-INVALID-TYPE"

    def __init__(self, kind: str, metric_id: str) -> None:
        super().__init__(kind, metric_id, "invalid metric type")


class InvalidMetricValueError(_MetricError):
    status_code = HTTPStatus.BAD_REQUEST
    error_code = "METRIC-INVALID-VALUE"

    def __init__(self, kind: str, metric_id: str) -> None:
        super().__init__(kind, metric_id, "invalid metric value")


class InvalidSignatureError(_MetricError):
    status_code = HTTPStatus.BAD_REQUEST
    error_code = "METRIC-INVALID-HASH"

    def __init__(self, kind: str, metric_id: str) -> None:
        super().__init__(kind, metric_id, "invalid metric hash")


class MetricNotFoundError(_MetricError):
    status_code = HTTPStatus.NOT_FOUND
    error_code = "METRIC-NOT-FOUND"

    def __init__(self, kind: str, metric_id: str) -> None:
        super().__init__(kind, metric_id, "not found metric")


class StorageUnavailableError(MetricServiceError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code = "STORAGE-UNAVAILABLE"


class PersistenceError(MetricServiceError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code = "STORAGE-PERSISTENCE"


class SchemaValidationError(MetricServiceError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code = "STORAGE-SCHEMA"
