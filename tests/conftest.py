"""
Shared fixtures for Fleet Sentinel tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from fleet_sentinel.alerts.manager import AlertManager
from fleet_sentinel.alerts.store import AlertStore
from fleet_sentinel.core.config import AlertConfig
from fleet_sentinel.inventory.store import InventoryStore
from fleet_sentinel.notifications.dispatcher import NotificationDispatcher
from fleet_sentinel.notifications.providers import NotificationProvider
from fleet_sentinel.workflows.actions import RemoteExecutor, RemoteResult

# Wednesday, inside default business hours
T0 = datetime(2026, 1, 14, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for time-dependent behaviour."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingProvider(NotificationProvider):
    """Provider that remembers what it was asked to send."""

    def __init__(self, name: str = "webhook", succeed: bool = True, explode: bool = False):
        self.name = name
        self.succeed = succeed
        self.explode = explode
        self.sent = []

    def is_enabled(self) -> bool:
        return True

    def send(self, notification) -> bool:
        if self.explode:
            raise RuntimeError("provider exploded")
        self.sent.append(notification)
        return self.succeed


class FakeRemote(RemoteExecutor):
    """Remote transport that fails commands listed in ``failing``."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.failing = set()

    async def run(self, device_id, kind, payload, timeout) -> RemoteResult:
        self.calls.append({"device_id": device_id, "kind": kind.value, "payload": payload})
        command = payload.get("command") or payload.get("path") or payload.get("service") or ""
        if command.split()[0] in self.failing:
            return RemoteResult(exit_code=1, output=f"{command} failed")
        return RemoteResult(exit_code=0, output=f"ran {command}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "fleet.db")


@pytest.fixture
def alert_store(db_path):
    return AlertStore(db_path)


@pytest.fixture
def inventory(db_path):
    return InventoryStore(db_path)


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def dispatcher(provider):
    return NotificationDispatcher([provider], routes={"team": ["webhook"], "oncall": ["webhook"]})


@pytest.fixture
def alert_manager(alert_store, clock):
    return AlertManager(alert_store, AlertConfig(), clock=clock)


@pytest.fixture
def remote():
    return FakeRemote()
