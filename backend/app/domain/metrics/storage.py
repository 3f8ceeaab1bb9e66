"""Storage contract every metric backend satisfies."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, runtime_checkable

from .types import Metric, MetricSet

__all__ = [
    "MetricStorage",
    "RelationalMetricStorage",
    "SnapshotMetricStorage",
]


@runtime_checkable
class MetricStorage(Protocol):  # pragma: no cover - interface only
    """Operations the update service relies on.

    ``timeout`` is a per-call deadline in seconds. Local backends may ignore it
    once a mutation has started.
    """

    backend_name: str

    def save(self, metric: Metric, *, timeout: Optional[float] = None) -> None:
        """Upsert ``metric`` under its ``(kind, id)`` key, replacing any value."""

    def read(
        self, kind: str, metric_id: str, *, timeout: Optional[float] = None
    ) -> Metric:
        """Return a copy of the stored metric or raise ``MetricNotFoundError``."""

    def read_all(self, *, timeout: Optional[float] = None) -> MetricSet: ...

    def increment_counter(
        self, metric_id: str, delta: int, *, timeout: Optional[float] = None
    ) -> None:
        """Add ``delta`` to an existing counter."""

    def upsert_counter(
        self, metric_id: str, delta: int, *, timeout: Optional[float] = None
    ) -> Metric:
        """Create the counter or add ``delta`` to it in one atomic step."""

    def apply_batch(
        self, metrics: Iterable[Metric], *, timeout: Optional[float] = None
    ) -> None:
        """Merge every metric or none of them."""

    def ping(self, *, timeout: Optional[float] = None) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class SnapshotMetricStorage(MetricStorage, Protocol):  # pragma: no cover
    """In-process backend persisted through full snapshot files."""

    write_through: bool

    def flush(self) -> bool: ...

    def restore(self) -> bool: ...


@runtime_checkable
class RelationalMetricStorage(MetricStorage, Protocol):  # pragma: no cover
    """Database backend with schema management."""

    def validate_schema(self, migrations_dir: str) -> None: ...
