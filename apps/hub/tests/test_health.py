from fastapi.testclient import TestClient

from services.readings import StoreUnavailable


def test_health_summary_reports_readings_and_cache(client: TestClient, service, reading_factory):
    client.post(
        "/api/v1/weather/data",
        json={
            "stationId": "station-1",
            "timestamp": "2025-06-01T10:00:00Z",
            "temperature": 20.0,
            "humidity": 60.0,
            "pressure": 1013.0,
            "precipitation": 0.0,
        },
    )
    client.get("/api/v1/weather/forecast", params={"stationId": "station-1", "hours": 2})

    response = client.get("/api/v1/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["readings"]["status"] == "ok"
    assert payload["readings"]["count"] == 1
    assert payload["readings"]["path"] == str(service.store.db_path)
    assert payload["forecast_cache"]["entries"] == 1
    assert payload["forecast_cache"]["misses"] == 1
    assert payload["uptime"]["seconds"] is not None
    assert payload["uptime"]["started_at"].endswith("Z")


def test_health_summary_flags_unavailable_store(client: TestClient, service, monkeypatch):
    async def _fail():
        raise StoreUnavailable("unable to open database file")

    monkeypatch.setattr(service.store, "count", _fail)
    payload = client.get("/api/v1/health").json()

    assert payload["status"] == "critical"
    assert payload["readings"]["count"] is None
    assert "unable to open database file" in payload["readings"]["error"]


def test_health_mqtt_disabled(client: TestClient):
    response = client.get("/api/v1/health/mqtt")

    assert response.status_code == 200
    assert response.json() == {"enabled": False, "status": "disabled", "connection": None}


def test_health_mqtt_without_manager_is_critical(client: TestClient, settings_override):
    settings_override(mqtt_enabled=True)

    payload = client.get("/api/v1/health/mqtt").json()

    assert payload["enabled"] is True
    assert payload["status"] == "critical"
    assert payload["connection"]["last_disconnect_reason"] == "manager_unavailable"
    assert payload["connection"]["topic"] == "weather/stations/+/readings"


def test_meta_endpoints(client: TestClient):
    root = client.get("/").json()
    assert root["name"] == "Weather Station Hub"

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    info = client.get("/api/v1/info").json()
    assert info["mqtt_enabled"] is False
    assert info["forecast_max_hours"] == 24
    assert info["mqtt_readings_topic"] == "weather/stations/+/readings"
