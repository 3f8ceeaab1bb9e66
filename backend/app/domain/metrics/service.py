"""Metric update service: merge policy, integrity checks and backend selection."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional

from ...config import Settings
from ...infra.db import build_engine
from ...infra.logging import get_logger
from .memory import InMemoryMetricStorage, PeriodicSnapshotFlusher
from .model import sign_metric, validate_metric
from .model import verify_signature as verify_metric_signature
from .relational import PING_TIMEOUT_SECONDS, PostgresMetricStorage
from .storage import MetricStorage, SnapshotMetricStorage
from .types import Metric, MetricSet, PersistenceError

__all__ = [
    "DEFAULT_CALL_TIMEOUT_SECONDS",
    "MetricUpdateService",
    "build_metric_storage",
]

logger = get_logger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 5.0


class MetricUpdateService:
    """Validation + merge layer over the active metric storage."""

    def __init__(
        self,
        storage: MetricStorage,
        *,
        key: Optional[str] = None,
        store_interval: float = 0,
        restore: bool = False,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._storage = storage
        self._key = key or None
        self._store_interval = store_interval
        self._restore = restore
        self._call_timeout = call_timeout
        self._flusher: Optional[PeriodicSnapshotFlusher] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "MetricUpdateService":
        return cls(
            build_metric_storage(settings),
            key=settings.key,
            store_interval=settings.storage.store_interval,
            restore=settings.storage.restore,
        )

    @property
    def storage(self) -> MetricStorage:
        return self._storage

    @property
    def signing_enabled(self) -> bool:
        return self._key is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Restore the snapshot and start periodic flushing where configured."""

        storage = self._snapshot_storage()
        if storage is None:
            return
        if self._restore:
            storage.restore()
        if self._store_interval > 0 and self._flusher is None:
            self._flusher = PeriodicSnapshotFlusher(storage, self._store_interval)
            self._flusher.start()

    def shutdown(self) -> None:
        """Stop the flusher, force a final snapshot and release the backend."""

        if self._flusher is not None:
            self._flusher.stop()
            self._flusher = None
        if self._snapshot_storage() is not None:
            self.flush()
        self._storage.close()

    def flush(self) -> bool:
        storage = self._snapshot_storage()
        if storage is None:
            return False
        try:
            return storage.flush()
        except PersistenceError as exc:
            logger.warning(
                "metric_snapshot_store_failed",
                extra={"error": exc.message, **exc.details},
            )
            return False

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------
    def apply_one(
        self,
        metric: Metric,
        *,
        verify_signature: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> Metric:
        """Validate, authenticate and merge a single metric.

        Counters go through the backend's atomic ``upsert_counter`` so two
        concurrent first observations of the same id both count.
        """

        self._check(metric, verify_signature)
        if metric.is_counter:
            stored = self._storage.upsert_counter(
                metric.id,
                int(metric.delta),  # type: ignore[arg-type]
                timeout=self._deadline(timeout),
            )
        else:
            stored = replace(metric, signature=None)
            self._storage.save(stored, timeout=self._deadline(timeout))
        self._after_mutation()
        return self._maybe_sign(stored, self.signing_enabled)

    def apply_batch(
        self,
        metrics: Iterable[Metric],
        *,
        verify_signature: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Check every metric before the backend applies the batch as one unit."""

        batch = list(metrics)
        for metric in batch:
            self._check(metric, verify_signature)
        if not batch:
            return
        self._storage.apply_batch(batch, timeout=self._deadline(timeout))
        self._after_mutation()
        logger.info("metric_batch_accepted", extra={"metrics": len(batch)})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read(
        self,
        kind: str,
        metric_id: str,
        *,
        with_signature: bool = False,
        timeout: Optional[float] = None,
    ) -> Metric:
        metric = self._storage.read(
            kind, metric_id, timeout=self._deadline(timeout)
        )
        return self._maybe_sign(metric, with_signature)

    def read_all(
        self, *, with_signature: bool = False, timeout: Optional[float] = None
    ) -> MetricSet:
        snapshot = self._storage.read_all(timeout=self._deadline(timeout))
        if not (with_signature and self.signing_enabled):
            return snapshot
        return MetricSet(
            counter={
                key: self._maybe_sign(metric, True)
                for key, metric in snapshot.counter.items()
            },
            gauge={
                key: self._maybe_sign(metric, True)
                for key, metric in snapshot.gauge.items()
            },
        )

    def list_metrics(
        self, *, with_signature: bool = False, timeout: Optional[float] = None
    ) -> List[Metric]:
        snapshot = self.read_all(with_signature=with_signature, timeout=timeout)
        return sorted(snapshot, key=lambda metric: (metric.kind, metric.id))

    def ping(self, *, timeout: float = PING_TIMEOUT_SECONDS) -> None:
        self._storage.ping(timeout=timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _check(self, metric: Metric, verify: Optional[bool]) -> None:
        validate_metric(metric)
        if verify is None:
            verify = self.signing_enabled
        if not verify:
            return
        if self._key is None:
            raise ValueError("signature verification requires an integrity key")
        verify_metric_signature(metric, self._key)

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        return self._call_timeout if timeout is None else timeout

    def _maybe_sign(self, metric: Metric, with_signature: bool) -> Metric:
        if not with_signature or self._key is None:
            return metric
        return replace(metric, signature=sign_metric(metric, self._key))

    def _after_mutation(self) -> None:
        storage = self._snapshot_storage()
        if storage is not None and storage.write_through:
            self.flush()

    def _snapshot_storage(self) -> Optional[SnapshotMetricStorage]:
        if isinstance(self._storage, InMemoryMetricStorage):
            return self._storage
        return None


def build_metric_storage(settings: Settings) -> MetricStorage:
    """Select the relational backend when reachable, else fall back to memory.

    Schema validation failures on a reachable database are fatal.
    """

    database = settings.database
    if database.url:
        storage: Optional[PostgresMetricStorage] = None
        try:
            storage = PostgresMetricStorage(build_engine(database))
            storage.ping(timeout=PING_TIMEOUT_SECONDS)
        except Exception:
            if storage is not None:
                storage.close()
            logger.warning(
                "postgres_metric_storage_unavailable_falling_back",
                exc_info=True,
            )
        else:
            storage.validate_schema(database.migrations_dir)
            logger.info("metric_storage_selected", extra={"backend": "postgres"})
            return storage

    storage_cfg = settings.storage
    memory = InMemoryMetricStorage(
        storage_cfg.store_file or None,
        write_through=storage_cfg.write_through,
    )
    logger.info(
        "metric_storage_selected",
        extra={
            "backend": memory.backend_name,
            "store_file": storage_cfg.store_file or None,
            "write_through": memory.write_through,
        },
    )
    return memory
