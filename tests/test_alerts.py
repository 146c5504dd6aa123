"""
Tests for the alert lifecycle: dedup, correlation, ack/resolve,
auto-clear reconciliation and archival.
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from fleet_sentinel.alerts.classifier import IssueClassifier
from fleet_sentinel.alerts.manager import AlertManager
from fleet_sentinel.alerts.models import AlertState, IssueRule
from fleet_sentinel.core.config import AlertConfig
from fleet_sentinel.core.errors import NotFoundError
from fleet_sentinel.core.models import AlertSeverity, AlertType

P = AlertType.PERFORMANCE
HIGH = AlertSeverity.HIGH


def count_rows(db_path):
    with sqlite3.connect(db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM alerts").fetchone()[0]


class TestCreate:
    """Test deduplicated creation."""

    def test_repeated_create_is_idempotent(self, alert_manager, db_path):
        ids = {
            alert_manager.create("d1", P, HIGH, "CPU high", "CPU at 97%", "Health-Monitor")
            for _ in range(5)
        }
        assert len(ids) == 1
        assert count_rows(db_path) == 1

    def test_dedup_key_includes_type_and_device(self, alert_manager):
        a = alert_manager.create("d1", P, HIGH, "CPU high")
        b = alert_manager.create("d2", P, HIGH, "CPU high")
        c = alert_manager.create("d1", AlertType.HEALTH, HIGH, "CPU high")
        assert len({a, b, c}) == 3

    def test_create_after_resolve_makes_new_alert(self, alert_manager):
        first = alert_manager.create("d1", P, HIGH, "CPU high")
        alert_manager.resolve(first, "alice")

        second = alert_manager.create("d1", P, HIGH, "CPU high")
        assert second != first
        assert alert_manager.get(first).is_resolved
        assert alert_manager.get(second).state == AlertState.ACTIVE

    def test_concurrent_creates_store_one_alert(self, alert_manager, db_path):
        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(
                lambda _: alert_manager.create("d1", P, HIGH, "Memory low"), range(16)
            ))
        assert len(set(ids)) == 1
        assert count_rows(db_path) == 1

    def test_high_severity_notifies_on_creation(self, alert_store, dispatcher, provider, clock):
        manager = AlertManager(alert_store, AlertConfig(), dispatcher, clock)
        alert_id = manager.create("d1", AlertType.SECURITY, HIGH, "Antivirus disabled")
        manager.create("d1", AlertType.SECURITY, HIGH, "Antivirus disabled")
        manager.create("d1", P, AlertSeverity.LOW, "Pending updates")

        assert len(provider.sent) == 1
        assert provider.sent[0].alert_id == alert_id
        record = manager.get(alert_id).notifications_sent
        assert len(record) == 1
        assert record[0].channels == ["team"]
        assert record[0].delivered is True

    def test_failed_notification_does_not_block_creation(self, alert_store, clock):
        class BrokenDispatcher:
            def dispatch(self, notification):
                raise RuntimeError("smtp down")

        manager = AlertManager(alert_store, AlertConfig(), BrokenDispatcher(), clock)
        alert_id = manager.create("d1", P, AlertSeverity.CRITICAL, "Disk full")

        alert = manager.get(alert_id)
        assert alert.state == AlertState.ACTIVE
        assert alert.notifications_sent[0].delivered is False


class TestTransitions:
    """Test acknowledge and resolve."""

    def test_acknowledge(self, alert_manager, clock):
        alert_id = alert_manager.create("d1", P, HIGH, "CPU high")
        clock.advance(minutes=3)

        alert = alert_manager.acknowledge(alert_id, "bob")
        assert alert.state == AlertState.ACKNOWLEDGED
        assert alert.acknowledged_by == "bob"
        assert alert.acknowledged_at == clock.now

    def test_acknowledge_resolved_alert_is_noop(self, alert_manager):
        alert_id = alert_manager.create("d1", P, HIGH, "CPU high")
        alert_manager.resolve(alert_id, "alice")

        alert = alert_manager.acknowledge(alert_id, "bob")
        assert alert.state == AlertState.RESOLVED
        assert alert.acknowledged_by is None

    def test_resolve_twice_keeps_first_resolution(self, alert_manager, clock):
        alert_id = alert_manager.create("d1", P, HIGH, "CPU high")
        first = alert_manager.resolve(alert_id, "alice")
        clock.advance(hours=1)
        second = alert_manager.resolve(alert_id, "bob", auto_resolved=True)

        assert second.resolved_at == first.resolved_at
        assert second.resolved_by == "alice"
        assert second.auto_resolved is False

    def test_unknown_alert_raises_not_found(self, alert_manager):
        with pytest.raises(NotFoundError) as exc_info:
            alert_manager.acknowledge("missing", "bob")
        assert exc_info.value.code == "NOT_FOUND"
        with pytest.raises(NotFoundError):
            alert_manager.resolve("missing", "bob")


class TestResolveCleared:
    """Test auto-clear reconciliation."""

    def test_absent_issue_is_auto_resolved(self, alert_manager):
        alert_id = alert_manager.create("d1", P, HIGH, "CPU high", source="Health-Monitor")

        assert alert_manager.resolve_cleared("d1", ["CPU high"], "Health-Monitor") == []
        assert not alert_manager.get(alert_id).is_resolved

        assert alert_manager.resolve_cleared("d1", [], "Health-Monitor") == [alert_id]
        alert = alert_manager.get(alert_id)
        assert alert.is_resolved
        assert alert.auto_resolved is True

    def test_only_reconciles_own_source_and_device(self, alert_manager):
        other_source = alert_manager.create("d1", P, HIGH, "CPU high", source="Patch-Audit")
        other_device = alert_manager.create("d2", P, HIGH, "CPU high", source="Health-Monitor")

        alert_manager.resolve_cleared("d1", [], "Health-Monitor")

        assert not alert_manager.get(other_source).is_resolved
        assert not alert_manager.get(other_device).is_resolved

    def test_manual_alerts_are_not_auto_resolved(self, alert_manager):
        alert_id = alert_manager.create(
            "d1", P, HIGH, "Fan noise", source="Health-Monitor", auto_resolve=False
        )
        assert alert_manager.resolve_cleared("d1", [], "Health-Monitor") == []
        assert not alert_manager.get(alert_id).is_resolved

    def test_create_then_reconcile_converges(self, alert_manager):
        issues = ["CPU high", "Memory low"]
        for _ in range(3):
            for issue in issues:
                alert_manager.create("d1", P, HIGH, issue, source="Health-Monitor")
            alert_manager.resolve_cleared("d1", issues, "Health-Monitor")

        assert sorted(a.title for a in alert_manager.list_alerts(device_id="d1")) == issues


class TestCorrelate:
    """Test grouping by type within a window."""

    def test_groups_same_type_alerts(self, alert_manager, clock):
        ids = [alert_manager.create("d1", P, AlertSeverity.MEDIUM, "CPU high")]
        clock.advance(minutes=2)
        ids.append(alert_manager.create("d1", P, AlertSeverity.CRITICAL, "Disk full"))
        clock.advance(minutes=2)
        ids.append(alert_manager.create("d1", P, AlertSeverity.LOW, "Memory low"))
        alert_manager.create("d1", AlertType.SECURITY, HIGH, "Firewall disabled")

        groups = alert_manager.correlate("d1", window_minutes=15)

        assert len(groups) == 1
        group = groups[0]
        assert group.alert_type == P
        assert group.count == 3
        assert group.max_severity == AlertSeverity.CRITICAL
        assert sorted(group.alert_ids) == sorted(ids)

    def test_window_excludes_old_and_resolved_alerts(self, alert_manager, clock):
        alert_manager.create("d1", P, HIGH, "CPU high")
        clock.advance(minutes=30)
        recent = alert_manager.create("d1", P, HIGH, "Memory low")
        resolved = alert_manager.create("d1", P, HIGH, "Disk slow")
        alert_manager.resolve(resolved, "alice")

        assert alert_manager.correlate("d1", window_minutes=15) == []
        assert alert_manager.get(recent).state == AlertState.ACTIVE

    def test_no_alerts_is_empty_not_error(self, alert_manager):
        assert alert_manager.correlate("nobody") == []


class TestArchive:
    """Test archival of resolved alerts."""

    def test_archival_boundary(self, alert_manager, clock):
        old = alert_manager.create("d1", P, HIGH, "CPU high")
        alert_manager.resolve(old, "alice")
        clock.advance(days=1)
        newer = alert_manager.create("d1", P, HIGH, "Memory low")
        alert_manager.resolve(newer, "alice")
        clock.advance(days=29)

        assert alert_manager.archive(30) == 1
        with pytest.raises(NotFoundError):
            alert_manager.get(old)
        assert alert_manager.get(newer).is_resolved

    def test_archive_never_touches_unresolved(self, alert_manager, clock):
        alert_id = alert_manager.create("d1", P, HIGH, "CPU high")
        clock.advance(days=365)

        assert alert_manager.archive(30) == 0
        assert alert_manager.get(alert_id).state == AlertState.ACTIVE

    def test_archive_uses_configured_default(self, alert_store, clock):
        manager = AlertManager(alert_store, AlertConfig(archive_days=7), clock=clock)
        alert_id = manager.create("d1", P, HIGH, "CPU high")
        manager.resolve(alert_id, "alice")
        clock.advance(days=7)

        assert manager.archive() == 1


class TestIssueClassifier:
    """Test issue string classification."""

    @pytest.mark.parametrize(
        "issue,expected",
        [
            ("Device unreachable", (AlertType.AVAILABILITY, AlertSeverity.CRITICAL)),
            ("Windows Defender disabled", (AlertType.SECURITY, AlertSeverity.HIGH)),
            ("Low disk space on C:", (AlertType.PERFORMANCE, AlertSeverity.HIGH)),
            ("CPU high", (AlertType.PERFORMANCE, AlertSeverity.MEDIUM)),
            ("12 pending updates", (AlertType.UPDATE, AlertSeverity.LOW)),
            ("Something odd", (AlertType.HEALTH, AlertSeverity.MEDIUM)),
        ],
    )
    def test_default_rules(self, issue, expected):
        assert IssueClassifier().classify(issue) == expected

    def test_custom_rules(self):
        classifier = IssueClassifier(
            rules=[IssueRule(keywords=["printer"], alert_type=AlertType.CUSTOM, severity=AlertSeverity.LOW)]
        )
        assert classifier.classify("Printer jammed") == (AlertType.CUSTOM, AlertSeverity.LOW)
        assert classifier.classify("CPU high") == (AlertType.HEALTH, AlertSeverity.MEDIUM)
