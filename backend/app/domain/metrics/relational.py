"""SQLAlchemy-backed metric storage for PostgreSQL (and SQLite in tests)."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError

from ...infra.logging import get_logger
from .storage import RelationalMetricStorage
from .types import (
    InvalidMetricKindError,
    Metric,
    MetricKind,
    MetricNotFoundError,
    MetricSet,
    PersistenceError,
    SchemaValidationError,
    StorageUnavailableError,
)

__all__ = [
    "METRICS_TABLE",
    "PING_TIMEOUT_SECONDS",
    "PostgresMetricStorage",
    "build_metrics_table",
]

logger = get_logger(__name__)

PING_TIMEOUT_SECONDS = 1.0
UNIQUE_CONSTRAINT_NAME = "uniq_name_type"


def build_metrics_table(metadata: MetaData) -> Table:
    """Declare ``metrics(name, type, delta, value)`` unique on ``(name, type)``."""

    return Table(
        "metrics",
        metadata,
        Column("name", Text(), nullable=False),
        Column("type", Text(), nullable=False),
        Column("delta", BigInteger(), nullable=True),
        Column("value", Float(precision=53), nullable=True),
        UniqueConstraint("name", "type", name=UNIQUE_CONSTRAINT_NAME),
    )


METRICS_TABLE = build_metrics_table(MetaData())


class PostgresMetricStorage(RelationalMetricStorage):
    """Single-table store; counters merge through an atomic additive upsert."""

    backend_name = "postgres"

    def __init__(self, engine: Engine, *, table: Optional[Table] = None) -> None:
        self._engine = engine
        self._metrics = table if table is not None else METRICS_TABLE
        dialect = engine.dialect.name
        if dialect == "postgresql":
            self._insert = postgresql.insert
        elif dialect == "sqlite":
            self._insert = sqlite.insert
        else:
            raise ValueError(f"unsupported metrics database dialect: {dialect}")

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Storage contract
    # ------------------------------------------------------------------
    def save(self, metric: Metric, *, timeout: Optional[float] = None) -> None:
        _require_kind(metric)
        with self._transaction(timeout) as conn:
            conn.execute(self._overwrite_stmt(), _row_params(metric))

    def read(
        self, kind: str, metric_id: str, *, timeout: Optional[float] = None
    ) -> Metric:
        if kind not in _KINDS:
            raise InvalidMetricKindError(kind, metric_id)
        table = self._metrics
        stmt = select(table.c.delta, table.c.value).where(
            table.c.name == metric_id, table.c.type == kind
        )
        with self._transaction(timeout) as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            raise MetricNotFoundError(kind, metric_id)
        return _row_to_metric({"name": metric_id, "type": kind, **row})

    def read_all(self, *, timeout: Optional[float] = None) -> MetricSet:
        table = self._metrics
        stmt = select(table.c.name, table.c.type, table.c.delta, table.c.value)
        with self._transaction(timeout) as conn:
            rows = conn.execute(stmt).mappings().all()
        result = MetricSet()
        for row in rows:
            metric = _row_to_metric(row)
            result.bucket(metric.kind, metric.id)[metric.id] = metric
        return result

    def increment_counter(
        self, metric_id: str, delta: int, *, timeout: Optional[float] = None
    ) -> None:
        self.upsert_counter(metric_id, delta, timeout=timeout)

    def upsert_counter(
        self, metric_id: str, delta: int, *, timeout: Optional[float] = None
    ) -> Metric:
        table = self._metrics
        params = {
            "name": metric_id,
            "type": MetricKind.COUNTER.value,
            "delta": delta,
            "value": None,
        }
        with self._transaction(timeout) as conn:
            conn.execute(self._additive_stmt(), params)
            stored = conn.execute(
                select(table.c.delta).where(
                    table.c.name == metric_id,
                    table.c.type == MetricKind.COUNTER.value,
                )
            ).scalar_one()
        return Metric(id=metric_id, kind=MetricKind.COUNTER.value, delta=int(stored))

    def apply_batch(
        self, metrics: Iterable[Metric], *, timeout: Optional[float] = None
    ) -> None:
        additive = self._additive_stmt()
        overwrite = self._overwrite_stmt()
        applied = 0
        with self._transaction(timeout) as conn:
            for metric in metrics:
                _require_kind(metric)
                stmt = additive if metric.is_counter else overwrite
                conn.execute(stmt, _row_params(metric))
                applied += 1
        logger.debug("metric_batch_applied", extra={"metrics": applied})

    def ping(self, *, timeout: Optional[float] = PING_TIMEOUT_SECONDS) -> None:
        try:
            with self._engine.connect() as conn:
                self._set_deadline(conn, timeout)
                conn.execute(select(1))
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(
                "storage unavailable", details={"backend": self.backend_name}
            ) from exc

    def close(self) -> None:
        self._engine.dispose()
        logger.info("metric_storage_closed", extra={"backend": self.backend_name})

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------
    def validate_schema(self, migrations_dir: str) -> None:
        """Bring the schema to the latest revision; "nothing to apply" is fine."""

        script_location = Path(migrations_dir).expanduser()
        if not script_location.is_dir():
            raise SchemaValidationError(
                f"migrations directory {script_location} does not exist",
                details={"migrations_dir": str(script_location)},
            )
        config = Config()
        config.set_main_option("script_location", str(script_location))
        config.set_main_option(
            "sqlalchemy.url",
            self._engine.url.render_as_string(hide_password=False).replace("%", "%%"),
        )
        try:
            head = ScriptDirectory.from_config(config).get_current_head()
            with self._engine.begin() as conn:
                current = MigrationContext.configure(conn).get_current_revision()
                if current == head:
                    logger.info(
                        "metric_schema_up_to_date", extra={"revision": current}
                    )
                    return
                config.attributes["connection"] = conn
                command.upgrade(config, "head")
        except Exception as exc:
            raise SchemaValidationError(
                f"can't migrate metrics schema: {exc}",
                details={"migrations_dir": str(script_location)},
            ) from exc
        logger.info(
            "metric_schema_migrated",
            extra={"from_revision": current, "to_revision": head},
        )

    # ------------------------------------------------------------------
    # Statement helpers
    # ------------------------------------------------------------------
    def _overwrite_stmt(self):
        table = self._metrics
        stmt = self._insert(table)
        return stmt.on_conflict_do_update(
            index_elements=[table.c.name, table.c.type],
            set_={"delta": stmt.excluded.delta, "value": stmt.excluded.value},
        )

    def _additive_stmt(self):
        table = self._metrics
        stmt = self._insert(table)
        return stmt.on_conflict_do_update(
            index_elements=[table.c.name, table.c.type],
            set_={"delta": stmt.excluded.delta + func.coalesce(table.c.delta, 0)},
        )

    @contextmanager
    def _transaction(self, timeout: Optional[float]) -> Iterator[Connection]:
        try:
            with self._engine.begin() as conn:
                self._set_deadline(conn, timeout)
                yield conn
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailableError(
                f"storage unavailable: {exc.orig or exc}",
                details={"backend": self.backend_name},
            ) from exc
        except DBAPIError as exc:
            raise PersistenceError(
                f"can't store metrics: {exc.orig or exc}",
                details={"backend": self.backend_name},
            ) from exc

    def _set_deadline(self, conn: Connection, timeout: Optional[float]) -> None:
        if timeout is None or self._engine.dialect.name != "postgresql":
            return
        milliseconds = max(int(timeout * 1000), 1)
        conn.execute(text(f"SET LOCAL statement_timeout = {milliseconds}"))


_KINDS = frozenset(kind.value for kind in MetricKind)


def _require_kind(metric: Metric) -> None:
    if metric.kind not in _KINDS:
        raise InvalidMetricKindError(metric.kind, metric.id)


def _row_params(metric: Metric) -> Dict[str, Any]:
    return {
        "name": metric.id,
        "type": metric.kind,
        "delta": metric.delta,
        "value": metric.value,
    }


def _row_to_metric(row: Any) -> Metric:
    kind = row["type"]
    if kind not in _KINDS:
        raise InvalidMetricKindError(kind, row["name"])
    delta = row.get("delta")
    value = row.get("value")
    return Metric(
        id=row["name"],
        kind=kind,
        delta=int(delta) if delta is not None else None,
        value=float(value) if value is not None else None,
    )
