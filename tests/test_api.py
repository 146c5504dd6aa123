"""
Tests for the HTTP API.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from fleet_sentinel.api.app import create_app
from fleet_sentinel.controller import ControlPlane
from fleet_sentinel.core.config import AppConfig, StorageConfig, WorkflowConfig
from fleet_sentinel.core.models import AlertSeverity, AlertType, Device, DeviceStatus
from fleet_sentinel.health_score.models import ScoreBreakdown
from fleet_sentinel.health_score.sources import StaticMetricSource


@pytest.fixture
def control_plane(tmp_path, dispatcher, remote):
    config = AppConfig(
        storage=StorageConfig(db_path=str(tmp_path / "api.db")),
        workflows=WorkflowConfig(definitions_path=str(tmp_path / "none.yml")),
    )
    source = StaticMetricSource()
    source.set(ScoreBreakdown(device_id="d1", availability=25, performance=25, security=25, compliance=25))
    return ControlPlane(config, metric_source=source, remote=remote, dispatcher=dispatcher)


@pytest.fixture
def client(control_plane):
    with TestClient(create_app(control_plane)) as client:
        yield client


def wait_for_terminal(client, execution_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/workflows/executions/{execution_id}").json()
        if body["status"] != "Running":
            return body
        time.sleep(0.02)
    raise AssertionError(f"Execution {execution_id} did not finish")


class TestAPI:
    """Test the HTTP surface."""

    def test_health_and_root(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert "alerts" in client.get("/").json()["endpoints"]

    def test_unknown_alert_returns_error_code(self, client):
        response = client.get("/api/alerts/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_acknowledge_and_resolve(self, client, control_plane):
        alert_id = control_plane.alert_manager.create("d1", AlertType.PERFORMANCE, AlertSeverity.MEDIUM, "CPU high")

        response = client.post(f"/api/alerts/{alert_id}/acknowledge", json={"by": "bob"})
        assert response.status_code == 200
        assert response.json()["state"] == "Acknowledged"
        assert response.json()["acknowledged_by"] == "bob"

        response = client.post(f"/api/alerts/{alert_id}/resolve", json={"by": "bob"})
        assert response.json()["state"] == "Resolved"

        assert client.get("/api/alerts").json() == []
        listed = client.get("/api/alerts", params={"include_resolved": True}).json()
        assert [a["alert_id"] for a in listed] == [alert_id]

    def test_acknowledge_requires_actor(self, client, control_plane):
        alert_id = control_plane.alert_manager.create("d1", AlertType.PERFORMANCE, AlertSeverity.MEDIUM, "CPU high")
        assert client.post(f"/api/alerts/{alert_id}/acknowledge", json={}).status_code == 422

    def test_correlations(self, client, control_plane):
        manager = control_plane.alert_manager
        manager.create("d1", AlertType.SECURITY, AlertSeverity.HIGH, "Firewall disabled")
        manager.create("d1", AlertType.SECURITY, AlertSeverity.CRITICAL, "Malware found")

        groups = client.get("/api/alerts/correlations/d1").json()
        assert len(groups) == 1
        assert groups[0]["count"] == 2
        assert groups[0]["max_severity"] == "Critical"

    def test_fleet_summary(self, client, control_plane):
        control_plane.inventory.upsert_device(Device(device_id="d1"))
        control_plane.alert_manager.create("d1", AlertType.PERFORMANCE, AlertSeverity.HIGH, "CPU high")

        summary = client.get("/api/fleet").json()
        assert summary["total"] == 1
        assert summary["alerts"]["open"] == 1
        assert summary["alerts"]["High"] == 1

    def test_list_workflows(self, client):
        names = [w["name"] for w in client.get("/api/workflows").json()]
        assert "health-recheck" in names

    def test_start_unknown_workflow(self, client):
        response = client.post("/api/workflows/nope/start", json={"device_id": "d1"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"

    def test_start_and_poll_workflow(self, client, provider):
        response = client.post("/api/workflows/health-recheck/start", json={"device_id": "d1"})
        assert response.status_code == 202
        execution_id = response.json()["execution_id"]

        execution = wait_for_terminal(client, execution_id)
        assert execution["status"] == "Completed"
        assert [s["step_name"] for s in execution["steps"]] == ["check", "notify"]
        assert provider.sent[-1].message == "d1 passed its health re-check"

        history = client.get("/api/workflows/history", params={"device_id": "d1"}).json()
        assert [e["execution_id"] for e in history] == [execution_id]

    def test_stop_unknown_execution(self, client):
        response = client.post("/api/workflows/executions/missing/stop", json={"by": "alice"})
        assert response.status_code == 404

    def test_list_devices_by_status(self, client, control_plane):
        control_plane.inventory.upsert_device(Device(device_id="d2", status=DeviceStatus.OFFLINE))
        control_plane.inventory.upsert_device(Device(device_id="d1", status=DeviceStatus.ONLINE))

        assert [d["device_id"] for d in client.get("/api/fleet/devices").json()] == ["d1", "d2"]
        offline = client.get("/api/fleet/devices", params={"status": "Offline"}).json()
        assert [d["device_id"] for d in offline] == ["d2"]
        assert client.get("/api/fleet/devices", params={"status": "Sideways"}).status_code == 422

    def test_acknowledging_resolved_alert_is_a_noop(self, client, control_plane):
        alert_id = control_plane.alert_manager.create("d1", AlertType.PERFORMANCE, AlertSeverity.MEDIUM, "CPU high")
        client.post(f"/api/alerts/{alert_id}/resolve", json={"by": "bob"})

        response = client.post(f"/api/alerts/{alert_id}/acknowledge", json={"by": "carol"})
        assert response.status_code == 200
        assert response.json()["state"] == "Resolved"
        assert response.json()["acknowledged_by"] is None

    def test_stop_running_execution(self, client, control_plane):
        execution, _, _ = asyncio.run(
            control_plane.orchestrator._prepare("health-recheck", "d1", None, None, "api")
        )

        response = client.post(f"/api/workflows/executions/{execution.execution_id}/stop", json={"by": "alice"})
        assert response.status_code == 200
        assert response.json()["status"] == "Running"
        assert response.json()["stop_requested_by"] == "alice"
