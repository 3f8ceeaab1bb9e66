"""In-memory metric storage persisted through JSON snapshot files."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, Mapping, Optional

from ...infra.logging import get_logger
from .model import INT64_MAX, INT64_MIN, metric_from_payload, validate_metric
from .storage import SnapshotMetricStorage
from .types import (
    InvalidMetricKindError,
    InvalidMetricValueError,
    Metric,
    MetricKind,
    MetricNotFoundError,
    MetricSet,
    PersistenceError,
)

__all__ = ["InMemoryMetricStorage", "PeriodicSnapshotFlusher"]

logger = get_logger(__name__)


class InMemoryMetricStorage(SnapshotMetricStorage):
    """Map-backed store guarded by a single lock for the whole metric set."""

    backend_name = "memory"

    def __init__(
        self,
        store_file: str | os.PathLike[str] | None = None,
        *,
        write_through: bool = False,
    ) -> None:
        self._lock = RLock()
        self._flush_lock = threading.Lock()
        self._metrics = MetricSet()
        self._store_file = Path(store_file) if store_file else None
        self.write_through = write_through and self._store_file is not None

    @property
    def store_file(self) -> Optional[Path]:
        return self._store_file

    # ------------------------------------------------------------------
    # Storage contract
    # ------------------------------------------------------------------
    def save(self, metric: Metric, *, timeout: Optional[float] = None) -> None:
        with self._lock:
            bucket = self._metrics.bucket(metric.kind, metric.id)
            bucket[metric.id] = replace(metric, signature=None)

    def read(
        self, kind: str, metric_id: str, *, timeout: Optional[float] = None
    ) -> Metric:
        with self._lock:
            metric = self._metrics.bucket(kind, metric_id).get(metric_id)
        if metric is None:
            raise MetricNotFoundError(kind, metric_id)
        return metric

    def read_all(self, *, timeout: Optional[float] = None) -> MetricSet:
        with self._lock:
            return self._metrics.copy()

    def increment_counter(
        self, metric_id: str, delta: int, *, timeout: Optional[float] = None
    ) -> None:
        with self._lock:
            current = self._metrics.counter.get(metric_id)
            if current is None:
                raise MetricNotFoundError(MetricKind.COUNTER.value, metric_id)
            self._metrics.counter[metric_id] = _add_delta(current, delta)

    def upsert_counter(
        self, metric_id: str, delta: int, *, timeout: Optional[float] = None
    ) -> Metric:
        with self._lock:
            current = self._metrics.counter.get(metric_id)
            if current is None:
                updated = Metric(
                    id=metric_id, kind=MetricKind.COUNTER.value, delta=delta
                )
            else:
                updated = _add_delta(current, delta)
            self._metrics.counter[metric_id] = updated
            return updated

    def apply_batch(
        self, metrics: Iterable[Metric], *, timeout: Optional[float] = None
    ) -> None:
        with self._lock:
            staged = self._metrics.copy()
            for metric in metrics:
                _merge_into(staged, metric)
            self._metrics = staged

    def ping(self, *, timeout: Optional[float] = None) -> None:
        return None

    def close(self) -> None:
        logger.info(
            "metric_storage_closed",
            extra={"backend": self.backend_name, "metrics": len(self._metrics)},
        )

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------
    def flush(self) -> bool:
        """Rewrite the snapshot file with the full metric set.

        Returns ``False`` when no snapshot file is configured.
        """

        if self._store_file is None:
            return False
        # Snapshots reach disk in capture order.
        with self._flush_lock:
            with self._lock:
                payload = self._metrics.to_payload()
                count = len(self._metrics)
            try:
                _atomic_write_json(self._store_file, payload)
            except (OSError, TypeError, ValueError) as exc:
                raise PersistenceError(
                    f"can't store metrics to {self._store_file}",
                    details={"path": str(self._store_file)},
                ) from exc
        logger.debug(
            "metric_snapshot_stored",
            extra={"path": str(self._store_file), "metrics": count},
        )
        return True

    def restore(self) -> bool:
        """Load the snapshot file into memory, starting empty on any decode failure."""

        path = self._store_file
        if path is None or not path.exists():
            return False
        try:
            if path.stat().st_size == 0:
                return False
            with path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
            restored = _decode_snapshot(raw)
        except (OSError, ValueError) as exc:
            logger.warning(
                "metric_snapshot_restore_failed",
                extra={"path": str(path), "error": str(exc)},
            )
            with self._lock:
                self._metrics = MetricSet()
            return False
        with self._lock:
            self._metrics = restored
        logger.info(
            "metric_snapshot_restored",
            extra={"path": str(path), "metrics": len(restored)},
        )
        return True


class PeriodicSnapshotFlusher:
    """Background thread that flushes a snapshot store at a fixed interval."""

    def __init__(self, storage: SnapshotMetricStorage, interval: float) -> None:
        if interval <= 0:
            raise ValueError("flush interval must be positive")
        self._storage = storage
        self._interval = interval
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._run, name="metric-snapshot-flusher", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._storage.flush()
            except PersistenceError as exc:
                logger.warning(
                    "metric_snapshot_store_failed",
                    extra={"error": exc.message, **exc.details},
                )


def _add_delta(current: Metric, delta: int) -> Metric:
    total = (current.delta or 0) + delta
    if not INT64_MIN <= total <= INT64_MAX:
        raise InvalidMetricValueError(current.kind, current.id)
    return replace(current, delta=total)


def _merge_into(metrics: MetricSet, metric: Metric) -> None:
    if metric.kind == MetricKind.COUNTER.value:
        current = metrics.counter.get(metric.id)
        if current is None:
            metrics.counter[metric.id] = replace(metric, signature=None)
        else:
            metrics.counter[metric.id] = _add_delta(current, metric.delta or 0)
    elif metric.kind == MetricKind.GAUGE.value:
        metrics.gauge[metric.id] = replace(metric, signature=None)
    else:
        raise InvalidMetricKindError(metric.kind, metric.id)


def _decode_snapshot(raw: Any) -> MetricSet:
    if not isinstance(raw, Mapping):
        raise ValueError("snapshot root must be an object")
    restored = MetricSet()
    for kind in MetricKind:
        entries = raw.get(kind.value) or {}
        if not isinstance(entries, Mapping):
            raise ValueError(f"snapshot section {kind.value!r} must be an object")
        bucket = restored.bucket(kind.value)
        for key, entry in entries.items():
            if not isinstance(entry, Mapping):
                raise ValueError(f"snapshot entry {key!r} must be an object")
            payload: Dict[str, Any] = {"id": key, "type": kind.value, **entry}
            metric = replace(metric_from_payload(payload), signature=None)
            if metric.kind != kind.value:
                raise ValueError(f"snapshot entry {key!r} is filed under {kind.value}")
            try:
                validate_metric(metric)
            except InvalidMetricValueError as exc:
                raise ValueError(f"snapshot entry {key!r} is invalid") from exc
            bucket[metric.id] = metric
    return restored


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
