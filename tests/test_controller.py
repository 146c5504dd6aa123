"""
Tests for the control plane's periodic work: schedules, archival, recovery.
"""

import asyncio

import pytest

from fleet_sentinel.controller import ControlPlane
from fleet_sentinel.core.config import AppConfig, StorageConfig, WorkflowConfig
from fleet_sentinel.core.errors import NotFoundError
from fleet_sentinel.core.models import AlertSeverity, AlertType, Device, DeviceStatus
from fleet_sentinel.health_score.models import ScoreBreakdown
from fleet_sentinel.health_score.sources import StaticMetricSource
from fleet_sentinel.workflows.models import WorkflowSchedule, WorkflowStatus
from fleet_sentinel.workflows.orchestrator import ABANDONED_ERROR


@pytest.fixture
def make_control_plane(tmp_path, dispatcher, remote, clock):
    definitions = tmp_path / "workflows.yml"
    definitions.write_text(
        "workflows:\n"
        "  - name: ping\n"
        "    steps:\n"
        "      - name: pause\n"
        "        action: builtin:wait\n"
        "        arguments: '0'\n"
    )

    def build(schedules=None):
        config = AppConfig(
            storage=StorageConfig(db_path=str(tmp_path / "control.db")),
            workflows=WorkflowConfig(definitions_path=str(definitions), schedules=schedules or []),
        )
        source = StaticMetricSource()
        source.set(ScoreBreakdown(device_id="d1", availability=25, performance=25, security=25, compliance=25))
        return ControlPlane(config, metric_source=source, remote=remote, dispatcher=dispatcher, clock=clock)

    return build


class TestControlPlane:
    """Test scheduled workflows and the periodic sweeps."""

    @pytest.mark.asyncio
    async def test_schedule_runs_only_when_due(self, make_control_plane, clock):
        control_plane = make_control_plane([
            WorkflowSchedule(workflow="ping", devices=["d1"], interval_minutes=30, params={"reason": "nightly"}),
        ])

        started = await control_plane.run_schedules_once()
        assert len(started) == 1

        clock.advance(minutes=29)
        assert await control_plane.run_schedules_once() == []

        clock.advance(minutes=1)
        assert len(await control_plane.run_schedules_once()) == 1

        await control_plane.orchestrator.shutdown()
        execution = control_plane.orchestrator.status(started[0])
        assert execution.status == WorkflowStatus.COMPLETED
        assert execution.triggered_by == "schedule"
        assert execution.params == {"reason": "nightly"}

    @pytest.mark.asyncio
    async def test_wildcard_schedule_covers_inventory(self, make_control_plane):
        control_plane = make_control_plane([WorkflowSchedule(workflow="ping", interval_minutes=60)])
        control_plane.inventory.upsert_device(Device(device_id="d2"))
        control_plane.inventory.upsert_device(Device(device_id="d1"))

        started = await control_plane.run_schedules_once()
        await control_plane.orchestrator.shutdown()

        assert len(started) == 2
        devices = sorted(e.device_id for e in control_plane.orchestrator.history())
        assert devices == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_bad_schedule_does_not_block_others(self, make_control_plane):
        control_plane = make_control_plane([
            WorkflowSchedule(workflow="reboot-everything", devices=["d1", "d2"], interval_minutes=5),
            WorkflowSchedule(workflow="ping", devices=["d1"], interval_minutes=5),
        ])

        started = await control_plane.run_schedules_once()
        await control_plane.orchestrator.shutdown()

        assert len(started) == 1
        assert [e.workflow_name for e in control_plane.orchestrator.history()] == ["ping"]

    @pytest.mark.asyncio
    async def test_archival_sweep(self, make_control_plane, clock):
        control_plane = make_control_plane()
        manager = control_plane.alert_manager
        old = manager.create("d1", AlertType.PERFORMANCE, AlertSeverity.LOW, "Pending updates")
        manager.resolve(old, "bob")
        open_id = manager.create("d1", AlertType.PERFORMANCE, AlertSeverity.LOW, "CPU high")

        clock.advance(days=control_plane.config.alerts.archive_days)
        assert await control_plane.run_archival_once() == 1

        with pytest.raises(NotFoundError):
            manager.get(old)
        assert not manager.get(open_id).is_resolved

    @pytest.mark.asyncio
    async def test_run_recovers_abandoned_runs_and_stops(self, make_control_plane, clock):
        control_plane = make_control_plane()
        control_plane.inventory.upsert_device(Device(device_id="d1"))
        orphan, _, _ = await control_plane.orchestrator._prepare("ping", "d1", None, None, "api")
        clock.advance(seconds=control_plane.config.workflows.lease_seconds + 1)

        task = asyncio.create_task(control_plane.run())
        for _ in range(100):
            recovered = control_plane.orchestrator.status(orphan.execution_id)
            device = control_plane.inventory.get_device("d1")
            if recovered.is_terminal and device.status == DeviceStatus.ONLINE:
                break
            await asyncio.sleep(0.02)

        control_plane.stop()
        await asyncio.wait_for(task, timeout=5)

        assert recovered.status == WorkflowStatus.FAILED
        assert recovered.error == ABANDONED_ERROR
        assert device.status == DeviceStatus.ONLINE
        assert control_plane.running is False
