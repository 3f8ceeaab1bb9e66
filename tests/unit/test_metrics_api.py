"""FastAPI-level tests for the metric update and value endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient

import pytest

from backend.app.api.dependencies import get_metric_service
from backend.app.domain.metrics import (
    InMemoryMetricStorage,
    Metric,
    MetricUpdateService,
    StorageUnavailableError,
    sign_metric,
    signed,
)
from backend.app.main import create_app

pytestmark = [pytest.mark.api]

KEY = "SuperSecretKey"


class UnreachableStorage(InMemoryMetricStorage):
    backend_name = "postgres"

    def ping(self, *, timeout=None) -> None:  # type: ignore[override]
        raise StorageUnavailableError("storage unavailable")


def _build_client(service: MetricUpdateService) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_metric_service] = lambda: service
    return TestClient(app)


@pytest.fixture()
def service() -> MetricUpdateService:
    return MetricUpdateService(InMemoryMetricStorage())


@pytest.fixture()
def client(service) -> TestClient:
    return _build_client(service)


def test_plain_text_update_then_value(client):
    assert client.post("/update/counter/PollCount/5").status_code == 200
    assert client.post("/update/counter/PollCount/7").status_code == 200
    assert client.post("/update/gauge/Alloc/11").status_code == 200

    counter = client.get("/value/counter/PollCount")
    gauge = client.get("/value/gauge/Alloc")

    assert counter.status_code == 200
    assert counter.text == "12"
    assert gauge.text == "11"


@pytest.mark.parametrize(
    ("path", "status", "error_code"),
    [
        ("/update/counter/PollCount/1.5", 400, "METRIC-INVALID-VALUE"),
        ("/update/gauge/Alloc/none", 400, "METRIC-INVALID-VALUE"),
        ("/update/histogram/Latency/1", 501, "METRIC-INVALID-TYPE"),
    ],
)
def test_plain_text_update_rejections(client, path, status, error_code):
    response = client.post(path)

    assert response.status_code == status
    assert response.json()["detail"]["error_code"] == error_code


def test_plain_text_value_of_unknown_metric_is_404(client):
    response = client.get("/value/gauge/Missing")

    assert response.status_code == 404
    assert response.json()["detail"]["details"] == {"type": "gauge", "id": "Missing"}


def test_json_update_returns_stored_metric(client):
    first = client.post("/update/", json={"id": "PollCount", "type": "counter", "delta": 2})
    second = client.post(
        "/update/", json={"id": "PollCount", "type": "counter", "delta": 3}
    )
    gauge = client.post("/update/", json={"id": "Alloc", "type": "gauge", "value": 1.5})

    assert first.status_code == 200
    assert second.json() == {"id": "PollCount", "type": "counter", "delta": 5}
    assert gauge.json() == {"id": "Alloc", "type": "gauge", "value": 1.5}


def test_json_update_with_missing_value_is_400(client):
    response = client.post("/update/", json={"id": "PollCount", "type": "counter"})

    assert response.status_code == 400


def test_malformed_json_body_is_400(client):
    response = client.post(
        "/update/", content=b"{not json", headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400


def test_json_value_lookup(client):
    client.post("/update/gauge/Alloc/0.125")

    found = client.post("/value/", json={"id": "Alloc", "type": "gauge"})
    missing = client.post("/value/", json={"id": "Nope", "type": "gauge"})

    assert found.json() == {"id": "Alloc", "type": "gauge", "value": 0.125}
    assert missing.status_code == 404


def test_signed_json_round_trip():
    service = MetricUpdateService(InMemoryMetricStorage(), key=KEY)
    client = _build_client(service)
    metric = signed(Metric(id="testGauge", kind="gauge", value=11.0), KEY)

    accepted = client.post("/update/", json=metric.to_payload())
    rejected = client.post(
        "/update/",
        json={"id": "testGauge", "type": "gauge", "value": 12.0, "hash": metric.signature},
    )
    read_back = client.post("/value/", json={"id": "testGauge", "type": "gauge"})

    assert accepted.status_code == 200
    assert accepted.json()["hash"] == metric.signature
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["error_code"] == "METRIC-INVALID-HASH"
    assert read_back.json()["value"] == 11.0
    assert read_back.json()["hash"] == sign_metric(metric, KEY)


def test_batch_update_returns_all_metrics(client):
    client.post("/update/counter/PollCount/1")

    response = client.post(
        "/updates/",
        json=[
            {"id": "PollCount", "type": "counter", "delta": 2},
            {"id": "PollCount", "type": "counter", "delta": 3},
            {"id": "Alloc", "type": "gauge", "value": 4.0},
        ],
    )

    assert response.status_code == 200
    assert response.json() == {
        "Metrics": [
            {"id": "PollCount", "type": "counter", "delta": 6},
            {"id": "Alloc", "type": "gauge", "value": 4.0},
        ]
    }


def test_batch_with_invalid_element_changes_nothing(client, service):
    client.post("/update/counter/PollCount/1")

    response = client.post(
        "/updates/",
        json=[
            {"id": "PollCount", "type": "counter", "delta": 2},
            {"id": "Latency", "type": "histogram", "delta": 3},
        ],
    )

    assert response.status_code == 501
    assert service.read("counter", "PollCount").delta == 1


def test_index_lists_snapshot(client):
    client.post("/update/counter/PollCount/2")
    client.post("/update/gauge/Alloc/3.5")

    response = client.get("/")

    assert response.json() == {
        "counter": {"PollCount": {"id": "PollCount", "type": "counter", "delta": 2}},
        "gauge": {"Alloc": {"id": "Alloc", "type": "gauge", "value": 3.5}},
    }


def test_ping_reports_storage_health(client):
    assert client.get("/ping").status_code == 200

    failing = _build_client(MetricUpdateService(UnreachableStorage()))
    response = failing.get("/ping")

    assert response.status_code == 500
    assert response.json()["detail"]["error_code"] == "STORAGE-UNAVAILABLE"


def test_healthcheck_reports_backend(client):
    response = client.get("/api/healthz")

    assert response.status_code == 200
    assert response.json()["metricStore"] == "memory"
    assert response.json()["signing"] is False
