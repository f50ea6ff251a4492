"""
Unit tests for the EcoFlow Monitor API

Tests endpoints against an in-memory store and a mocked EcoFlow client.
"""

import time
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from conftest import make_reading
from ecoflow_monitor.api import app, get_store, get_vendor_api, status_for_error
from ecoflow_monitor.config import Settings, get_settings
from ecoflow_monitor.errors import (
    AuthorizationError,
    MonitorError,
    VendorAPIError,
    VendorTransportError,
)
from ecoflow_monitor.models import ReadingStatus


@pytest.fixture
def vendor_api(sample_quota):
    api = Mock()
    api.get_device_quota.return_value = sample_quota
    api.get_device_list.return_value = [
        {"serial": "R331ZEB4ZEA0001", "name": "Delta 2", "product_type": "DELTA 2", "online": True},
    ]
    return api


@pytest.fixture
def client(store, vendor_api):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_vendor_api] = lambda: vendor_api
    app.dependency_overrides[get_settings] = lambda: Settings(cron_secret="s3cret")
    test_client = TestClient(app)
    test_client.cookies.set("ecoflow_session", "valid-token")
    yield test_client
    app.dependency_overrides.clear()


def now_ms():
    return int(time.time() * 1000)


# ---------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------

@pytest.mark.parametrize("exc,expected", [
    (AuthorizationError("nope"), 403),
    (VendorTransportError("timeout"), 503),
    (VendorAPIError("HTTP 502", status=502), 502),
    (VendorAPIError("Invalid sign", code="1006"), 424),
    (MonitorError("other"), 500),
])
def test_status_for_error(exc, expected):
    assert status_for_error(exc) == expected


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# ---------------------------------------------------------------------
# Collection endpoints
# ---------------------------------------------------------------------

def test_collect_self_requires_session(client):
    client.cookies.clear()
    response = client.post("/api/devices/collect-readings/self")

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_collect_self_invalid_session(client):
    client.cookies.set("ecoflow_session", "expired")
    response = client.post("/api/devices/collect-readings/self")
    assert response.status_code == 401


def test_collect_self_imports_owned_devices(client, store):
    response = client.post("/api/devices/collect-readings/self")

    assert response.status_code == 200
    assert response.json()["summary"] == {"imported": 2, "skipped": 0}
    assert store.count_readings() == 2


def test_collect_self_respects_interval(client, store):
    store.insert_reading(make_reading(device_id=1, recorded_at=now_ms()))

    response = client.post("/api/devices/collect-readings/self")
    body = response.json()

    assert response.status_code == 200
    assert body["summary"] == {"imported": 0, "skipped": 0}
    assert 0 < body["nextCollectionIn"] <= 300

    forced = client.post("/api/devices/collect-readings/self?force=true")
    assert forced.json()["summary"]["imported"] == 2


def test_collect_self_vendor_outage_is_server_error(client, store, vendor_api):
    """Test that a retryable failure on every device answers 5xx so sync retries."""
    vendor_api.get_device_quota.side_effect = VendorTransportError("EcoFlow API unreachable")

    response = client.post("/api/devices/collect-readings/self")

    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "EcoFlow API unreachable"}
    assert store.count_readings() == 0


def test_collect_single_device(client, store):
    response = client.post("/api/devices/collect-readings?deviceId=1")
    body = response.json()

    assert response.status_code == 200
    assert body["summary"] == {"imported": 1, "skipped": 0}
    assert body["reading"]["deviceId"] == 1
    assert body["reading"]["batteryLevel"] == 82
    assert body["reading"]["status"] == "discharging"
    assert "rawData" not in body["reading"]


def test_collect_foreign_device_forbidden(client, store):
    response = client.post("/api/devices/collect-readings?deviceId=3")

    assert response.status_code == 403
    assert store.count_readings() == 0


def test_collect_vendor_client_error(client, vendor_api):
    vendor_api.get_device_quota.side_effect = VendorAPIError("Invalid sign", code="1006")

    response = client.post("/api/devices/collect-readings?deviceId=1")

    assert response.status_code == 424


def test_cron_requires_bearer_secret(client):
    assert client.post("/api/cron/collect-readings").status_code == 401
    response = client.post(
        "/api/cron/collect-readings",
        headers={"Authorization": "Bearer wrong"},
    )
    assert response.status_code == 401


def test_cron_runs_backup_batch(client, store):
    response = client.post(
        "/api/cron/collect-readings",
        headers={"Authorization": "Bearer s3cret"},
    )
    body = response.json()

    assert response.status_code == 200
    assert (body["total"], body["success"], body["errors"]) == (2, 2, 0)
    assert store.count_readings() == 2


# ---------------------------------------------------------------------
# History & devices
# ---------------------------------------------------------------------

def test_history_readings_with_summary(client, store):
    base = now_ms() - 10 * 60 * 1000
    for i, battery in enumerate((80, 78, 76)):
        store.insert_reading(make_reading(device_id=1, recorded_at=base + i * 1000, battery_level=battery))

    response = client.get("/api/history/readings?timeRange=1h&deviceId=1")
    body = response.json()

    assert response.status_code == 200
    assert len(body["readings"]) == 3
    assert body["readings"][0]["deviceName"] == "Delta 2"
    assert body["summary"]["totalReadings"] == 3
    assert body["summary"]["avgBatteryLevel"] == 78
    assert body["summary"]["timeSpan"] == "1 hours"


def test_history_aggregated(client, store):
    base = now_ms() - 3 * 60 * 60 * 1000
    for i in range(6):
        store.insert_reading(make_reading(device_id=1, recorded_at=base + i * 60 * 1000))

    response = client.get("/api/history/readings?timeRange=24h&aggregation=1d")
    readings = response.json()["readings"]

    assert sum(r["readingCount"] for r in readings) == 6


def test_history_empty_summary_null(client):
    response = client.get("/api/history/readings?timeRange=7d")

    assert response.status_code == 200
    assert response.json() == {
        "readings": [],
        "summary": None,
        "pagination": {"hasMore": False, "nextOffset": None, "total": 0},
    }


def test_history_paginates_with_offset(client, store):
    base = now_ms() - 10 * 60 * 1000
    for i in range(5):
        store.insert_reading(make_reading(device_id=1, recorded_at=base + i * 1000))

    first = client.get("/api/history/readings?timeRange=1h&limit=3").json()
    second = client.get(
        f"/api/history/readings?timeRange=1h&limit=3&offset={first['pagination']['nextOffset']}"
    ).json()

    assert [r["recordedAt"] for r in first["readings"]] == [base + 2000, base + 3000, base + 4000]
    assert first["pagination"] == {"hasMore": True, "nextOffset": 3, "total": 5}
    assert [r["recordedAt"] for r in second["readings"]] == [base, base + 1000]
    assert second["pagination"]["hasMore"] is False


@pytest.mark.parametrize("query", [
    "aggregation=2h",
    "timeRange=1y",
    "limit=0",
    "offset=-1",
    "startDate=2024-06-02T00:00:00Z&endDate=2024-06-01T00:00:00Z",
])
def test_history_validation_errors(client, query):
    response = client.get(f"/api/history/readings?{query}")
    assert response.status_code == 400


def test_history_foreign_device_forbidden(client):
    response = client.get("/api/history/readings?deviceId=3")
    assert response.status_code == 403


def test_latest_readings_online_flag(client, store):
    store.insert_reading(make_reading(device_id=1, recorded_at=now_ms(), status=ReadingStatus.CHARGING))

    response = client.get("/api/devices/latest-readings")
    devices = {d["device"]["id"]: d for d in response.json()["devices"]}

    assert devices[1]["online"] is True
    assert devices[1]["reading"]["status"] == "charging"
    assert devices[2]["online"] is False
    assert devices[2]["reading"] is None
    assert 3 not in devices


def test_discover_devices(client, vendor_api):
    response = client.get("/api/devices/discover")

    assert response.status_code == 200
    assert response.json()["devices"][0]["serial"] == "R331ZEB4ZEA0001"
    vendor_api.get_device_list.assert_called_once()
