"""
Tests for notification routing and providers.
"""

import pytest
import requests

from fleet_sentinel.core.config import NotificationConfig
from fleet_sentinel.core.models import AlertSeverity
from fleet_sentinel.notifications import providers as providers_module
from fleet_sentinel.notifications.dispatcher import NotificationDispatcher
from fleet_sentinel.notifications.models import Notification
from fleet_sentinel.notifications.providers import (
    EmailProvider,
    TelegramProvider,
    WebhookProvider,
)

from conftest import RecordingProvider


def notification(*channels):
    return Notification(
        subject="CPU high on d1",
        message="CPU at 97%",
        severity=AlertSeverity.HIGH,
        channels=list(channels),
        alert_id="a1",
        device_id="d1",
    )


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class TestNotificationDispatcher:
    """Test channel routing."""

    def test_routes_channels_to_providers(self):
        team, pager = RecordingProvider("webhook"), RecordingProvider("telegram")
        dispatcher = NotificationDispatcher([team, pager], routes={"team": ["webhook"], "oncall": ["telegram"]})

        assert dispatcher.dispatch(notification("oncall")) is True
        assert team.sent == []
        assert len(pager.sent) == 1

    def test_shared_provider_called_once(self):
        provider = RecordingProvider("webhook")
        dispatcher = NotificationDispatcher([provider], routes={"team": ["webhook"], "oncall": ["webhook"]})

        dispatcher.dispatch(notification("team", "oncall"))
        assert len(provider.sent) == 1

    def test_unrouted_channel_goes_to_all_providers(self):
        a, b = RecordingProvider("a"), RecordingProvider("b")
        dispatcher = NotificationDispatcher([a, b], routes={})

        dispatcher.dispatch(notification("security"))
        assert len(a.sent) == len(b.sent) == 1

    def test_provider_exception_is_contained(self):
        broken = RecordingProvider("broken", explode=True)
        working = RecordingProvider("working")
        dispatcher = NotificationDispatcher([broken, working])

        assert dispatcher.dispatch(notification("team")) is True
        assert len(working.sent) == 1

    def test_all_providers_failing_reports_false(self):
        dispatcher = NotificationDispatcher([RecordingProvider("a", succeed=False)])
        assert dispatcher.dispatch(notification("team")) is False

    def test_no_enabled_providers(self):
        dispatcher = NotificationDispatcher.from_config(
            NotificationConfig(routes={"team": ["webhook", "email"]})
        )
        assert dispatcher.dispatch(notification("team")) is False
        assert dispatcher.get_enabled_providers() == ["log"]


class TestProviders:
    """Test provider configuration and delivery."""

    def test_unconfigured_providers_are_disabled(self):
        assert not WebhookProvider("").is_enabled()
        assert not EmailProvider(smtp_host="").is_enabled()
        assert not TelegramProvider("", ["123"]).is_enabled()
        assert not WebhookProvider("").send(notification("team"))

    def test_webhook_posts_notification(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, headers=None, timeout=None):
            calls.append((url, json, headers))
            return FakeResponse(200)

        monkeypatch.setattr(providers_module.requests, "post", fake_post)
        provider = WebhookProvider("https://hooks.example.com/fleet", token="s3cret")

        assert provider.send(notification("team")) is True
        url, body, headers = calls[0]
        assert url == "https://hooks.example.com/fleet"
        assert body["alert_id"] == "a1"
        assert body["severity"] == "High"
        assert headers["Authorization"] == "Bearer s3cret"

    @pytest.mark.parametrize(
        "outcome",
        [requests.Timeout("slow"), requests.ConnectionError("refused"), FakeResponse(500)],
    )
    def test_webhook_failures_return_false(self, monkeypatch, outcome):
        def fake_post(*args, **kwargs):
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        monkeypatch.setattr(providers_module.requests, "post", fake_post)
        assert WebhookProvider("https://hooks.example.com/fleet").send(notification("team")) is False

    def test_telegram_counts_successful_chats(self, monkeypatch):
        def fake_post(url, json=None, timeout=None):
            if json["chat_id"] == "1":
                return FakeResponse(200, {"ok": True})
            return FakeResponse(403, {"ok": False})

        monkeypatch.setattr(providers_module.requests, "post", fake_post)
        assert TelegramProvider("token", ["1", "2"]).send(notification("oncall")) is True
        assert TelegramProvider("token", ["2"]).send(notification("oncall")) is False
