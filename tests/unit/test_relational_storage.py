"""Tests for the SQLAlchemy metric backend, exercised against SQLite."""

from __future__ import annotations

from contextlib import contextmanager

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from backend.app.config import DatabaseConfig
from backend.app.config.loader import DEFAULT_MIGRATIONS_DIR
from backend.app.domain.metrics import (
    InvalidMetricKindError,
    Metric,
    MetricNotFoundError,
    PostgresMetricStorage,
    SchemaValidationError,
    StorageUnavailableError,
)
from backend.app.domain.metrics import relational as relational_module
from backend.app.infra.db import build_engine
from tests.helpers.logging import RecordingLogger, find_log

pytestmark = [pytest.mark.relational_store]


@pytest.fixture()
def storage(tmp_path):
    engine = build_engine(DatabaseConfig(url=f"sqlite+pysqlite:///{tmp_path}/metrics.db"))
    store = PostgresMetricStorage(engine)
    store.validate_schema(DEFAULT_MIGRATIONS_DIR)
    yield store
    store.close()


def test_validate_schema_creates_metrics_table(storage):
    inspector = sa.inspect(storage.engine)

    columns = {column["name"] for column in inspector.get_columns("metrics")}
    assert columns == {"name", "type", "delta", "value"}
    constraints = {item["name"] for item in inspector.get_unique_constraints("metrics")}
    assert "uniq_name_type" in constraints


def test_validate_schema_twice_reports_up_to_date(storage, monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(relational_module, "logger", recorder)

    storage.validate_schema(DEFAULT_MIGRATIONS_DIR)

    record = find_log(recorder.records, level="info", message="metric_schema_up_to_date")
    assert record["extra"]["revision"] == "20261019_create_metrics"


def test_validate_schema_rejects_missing_migrations(tmp_path):
    engine = build_engine(DatabaseConfig(url=f"sqlite+pysqlite:///{tmp_path}/m.db"))
    store = PostgresMetricStorage(engine)

    with pytest.raises(SchemaValidationError):
        store.validate_schema(str(tmp_path / "no_migrations_here"))


def test_save_and_read_round_trip(storage):
    storage.save(Metric(id="PollCount", kind="counter", delta=7))
    storage.save(Metric(id="Alloc", kind="gauge", value=1.25))

    assert storage.read("counter", "PollCount") == Metric(
        id="PollCount", kind="counter", delta=7
    )
    assert storage.read("gauge", "Alloc") == Metric(id="Alloc", kind="gauge", value=1.25)


def test_read_missing_and_unknown_kind(storage):
    with pytest.raises(MetricNotFoundError):
        storage.read("gauge", "Missing")
    with pytest.raises(InvalidMetricKindError):
        storage.read("histogram", "Missing")


def test_save_overwrites_on_conflict(storage):
    storage.save(Metric(id="Alloc", kind="gauge", value=1.0))
    storage.save(Metric(id="Alloc", kind="gauge", value=-3.5))

    assert storage.read("gauge", "Alloc").value == -3.5


def test_counter_and_gauge_rows_coexist_for_one_name(storage):
    storage.save(Metric(id="shared", kind="counter", delta=1))
    storage.save(Metric(id="shared", kind="gauge", value=2.0))

    snapshot = storage.read_all()

    assert snapshot.counter["shared"].delta == 1
    assert snapshot.gauge["shared"].value == 2.0
    assert len(snapshot) == 2


def test_upsert_counter_inserts_then_adds(storage):
    first = storage.upsert_counter("PollCount", 5)
    second = storage.upsert_counter("PollCount", -2)

    assert first.delta == 5
    assert second.delta == 3
    assert storage.read("counter", "PollCount").delta == 3


def test_increment_counter_adds_to_existing_row(storage):
    storage.save(Metric(id="PollCount", kind="counter", delta=10))

    storage.increment_counter("PollCount", 4)

    assert storage.read("counter", "PollCount").delta == 14


def test_apply_batch_merges_in_one_transaction(storage):
    storage.save(Metric(id="PollCount", kind="counter", delta=1))

    storage.apply_batch(
        [
            Metric(id="PollCount", kind="counter", delta=2),
            Metric(id="PollCount", kind="counter", delta=3),
            Metric(id="Alloc", kind="gauge", value=1.0),
            Metric(id="Alloc", kind="gauge", value=9.0),
        ]
    )

    assert storage.read("counter", "PollCount").delta == 6
    assert storage.read("gauge", "Alloc").value == 9.0


def test_apply_batch_rolls_back_on_invalid_element(storage):
    storage.save(Metric(id="PollCount", kind="counter", delta=1))

    with pytest.raises(InvalidMetricKindError):
        storage.apply_batch(
            [
                Metric(id="PollCount", kind="counter", delta=2),
                Metric(id="Alloc", kind="gauge", value=1.0),
                Metric(id="broken", kind="histogram", delta=1),
            ]
        )

    assert storage.read("counter", "PollCount").delta == 1
    with pytest.raises(MetricNotFoundError):
        storage.read("gauge", "Alloc")


def test_read_all_rejects_unknown_row_type(storage):
    with storage.engine.begin() as conn:
        conn.execute(
            sa.text("INSERT INTO metrics (name, type, delta) VALUES ('x', 'histogram', 1)")
        )

    with pytest.raises(InvalidMetricKindError):
        storage.read_all()


def test_ping_succeeds_for_reachable_database(storage):
    storage.ping(timeout=1.0)


def test_ping_reports_unreachable_database():
    engine = build_engine(
        DatabaseConfig(url="sqlite+pysqlite:////nonexistent/directory/metrics.db")
    )
    store = PostgresMetricStorage(engine)

    with pytest.raises(StorageUnavailableError):
        store.ping(timeout=1.0)


def test_postgres_dialect_uses_additive_upsert():
    engine = sa.create_engine("postgresql+psycopg://user:pw@localhost/metrics")
    store = PostgresMetricStorage(engine)

    sql = str(store._additive_stmt().compile(dialect=engine.dialect))

    assert "ON CONFLICT (name, type) DO UPDATE" in sql
    assert "excluded.delta + coalesce(metrics.delta" in sql


class RecordingConnection:
    def __init__(self) -> None:
        self.statements: list[str] = []

    def execute(self, statement, parameters=None):
        self.statements.append(str(statement))


class StubPostgresEngine:
    dialect = postgresql.dialect()

    def __init__(self) -> None:
        self.connection = RecordingConnection()

    @contextmanager
    def begin(self):
        yield self.connection

    @contextmanager
    def connect(self):
        yield self.connection


def test_postgres_transaction_sets_statement_timeout():
    engine = StubPostgresEngine()
    store = PostgresMetricStorage(engine)  # type: ignore[arg-type]

    with store._transaction(2.5):
        pass
    with store._transaction(None):
        pass

    assert engine.connection.statements == ["SET LOCAL statement_timeout = 2500"]


def test_postgres_ping_sets_statement_timeout_before_probe():
    engine = StubPostgresEngine()
    store = PostgresMetricStorage(engine)  # type: ignore[arg-type]

    store.ping(timeout=1.0)

    assert engine.connection.statements[0] == "SET LOCAL statement_timeout = 1000"
    assert engine.connection.statements[1].startswith("SELECT")
    assert len(engine.connection.statements) == 2
