"""Metric domain package: model, storage backends and update service."""

from .memory import InMemoryMetricStorage, PeriodicSnapshotFlusher
from .model import (
    metric_from_payload,
    parse_metric,
    sign_metric,
    signed,
    validate_metric,
    verify_signature,
)
from .relational import PostgresMetricStorage
from .service import MetricUpdateService, build_metric_storage
from .storage import MetricStorage, RelationalMetricStorage, SnapshotMetricStorage
from .types import (
    InvalidMetricKindError,
    InvalidMetricValueError,
    InvalidSignatureError,
    Metric,
    MetricKind,
    MetricNotFoundError,
    MetricServiceError,
    MetricSet,
    PersistenceError,
    SchemaValidationError,
    StorageUnavailableError,
)

__all__ = [
    "InMemoryMetricStorage",
    "InvalidMetricKindError",
    "InvalidMetricValueError",
    "InvalidSignatureError",
    "Metric",
    "MetricKind",
    "MetricNotFoundError",
    "MetricServiceError",
    "MetricSet",
    "MetricStorage",
    "MetricUpdateService",
    "PeriodicSnapshotFlusher",
    "PersistenceError",
    "PostgresMetricStorage",
    "RelationalMetricStorage",
    "SchemaValidationError",
    "SnapshotMetricStorage",
    "StorageUnavailableError",
    "build_metric_storage",
    "metric_from_payload",
    "parse_metric",
    "sign_metric",
    "signed",
    "validate_metric",
    "verify_signature",
]
