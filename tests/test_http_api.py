import pytest
from fastapi.testclient import TestClient

from tickflow.http_api import create_app


@pytest.fixture
def client(pipeline):
    return TestClient(create_app(pipeline))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["server_time"].startswith("2023-11-14T")


def test_ingest_then_predict(client):
    response = client.post("/ingest", json={"symbols": ["BTC/USD"], "exchanges": ["fake"]})
    assert response.status_code == 200
    assert response.json()["tickCount"] == 20

    response = client.post("/inference", json={"action": "predict", "data": {"symbol": "BTC/USD"}})
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["modelVersion"] == "linear-v1"

    state = client.get("/state").json()
    assert state["cycles_total"] == 1
    assert state["predictions_total"] == {"full": 1}


def test_inference_errors_become_500(client):
    response = client.post("/inference", json={"action": "predict", "data": {"symbol": "BTC/USD"}})
    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "insufficient data" in response.json()["error"]

    response = client.post("/inference", json={"action": "explode"})
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Unknown action: explode"}


def test_ingest_rejects_empty_symbols(client):
    response = client.post("/ingest", json={"symbols": []})
    assert response.status_code == 500
    assert response.json()["success"] is False


def test_monitoring(client):
    response = client.get("/monitoring", params={"action": "status"})
    assert response.status_code == 200
    assert response.json()["status"]["overall"] is False

    assert client.get("/monitoring", params={"action": "drift"}).json()["drift"]["reason"] == "insufficient_data"
    assert client.get("/monitoring", params={"action": "nope"}).status_code == 500


def test_resolve_alert(client, pipeline):
    client.post("/inference", json={"action": "predict", "data": {"symbol": "BTC/USD", "features": {}}})
    alert_id = pipeline.store.unresolved_alerts()[0].id

    response = client.post(f"/monitoring/alerts/{alert_id}/resolve")
    assert response.json()["resolved"] is True
    assert client.post("/monitoring/alerts/unknown/resolve").json()["resolved"] is False


def test_malformed_bodies_become_500(client):
    response = client.post("/ingest", json={"symbols": "AAPL"})
    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "symbols" in body["error"]

    response = client.post("/inference", json={"data": {}})
    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "action" in response.json()["error"]
