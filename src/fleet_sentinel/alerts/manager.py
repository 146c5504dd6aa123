"""
Alert lifecycle manager.

Creation goes through the dedup check; acknowledgment and resolution are
explicit transitions; auto-clear reconciliation and archival are batch
passes run by the control plane.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..core.config import AlertConfig
from ..core.errors import NotFoundError
from ..core.models import AlertSeverity, AlertType
from ..core.time_util import utcnow
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.formatters import alert_to_notification
from .models import Alert, CorrelationGroup, NotificationRecord
from .store import AlertStore

logger = logging.getLogger(__name__)


class AlertManager:
    """
    Owns every state transition of an alert.

    ``Active -> [Acknowledged] -> Resolved -> Archived``. Acknowledging or
    resolving an alert that is already past that state is a no-op, not an
    error.
    """

    def __init__(
        self,
        store: AlertStore,
        config: Optional[AlertConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize alert manager.

        Args:
            store: Alert storage
            config: Alert lifecycle settings
            dispatcher: Notification dispatcher for creation notices (optional)
            clock: Returns the current time; injectable for tests
        """
        self.store = store
        self.config = config or AlertConfig()
        self.dispatcher = dispatcher
        self.clock = clock

    def create(
        self,
        device_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str = "",
        source: str = "Manual",
        auto_resolve: bool = True,
    ) -> str:
        """
        Create an alert unless an unresolved one with the same key exists.

        Safe to call once per detected issue on every assessment cycle.

        Returns:
            Id of the new alert, or of the existing unresolved alert
        """
        alert, _ = self.create_with_status(
            device_id, alert_type, severity, title, message, source, auto_resolve
        )
        return alert.alert_id

    def create_with_status(
        self,
        device_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str = "",
        source: str = "Manual",
        auto_resolve: bool = True,
        notify: bool = True,
    ) -> Tuple[Alert, bool]:
        """
        Like :meth:`create` but also report whether a new alert was stored.

        Args:
            notify: Send the creation notice now. Callers that must not wait
                on delivery pass False and call :meth:`notify_created` later.

        Returns:
            (alert, created)
        """
        candidate = Alert(
            alert_id=uuid.uuid4().hex,
            device_id=device_id,
            alert_type=AlertType(alert_type),
            severity=AlertSeverity(severity),
            title=title,
            message=message,
            source=source,
            created_at=self.clock(),
            auto_resolve=auto_resolve,
        )

        alert, created = self.store.insert_if_absent(candidate)
        if not created:
            logger.debug(f"Alert already open for {device_id}/{title}: {alert.alert_id}")
            return alert, False

        logger.info(
            f"Created alert {alert.alert_id}: [{alert.severity.value}] {title} "
            f"on {device_id} (source={source})"
        )

        if notify:
            self.notify_created(alert)

        return alert, True

    def get(self, alert_id: str) -> Alert:
        """
        Get alert by id.

        Raises:
            NotFoundError: if no alert has this id
        """
        alert = self.store.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    def list_alerts(
        self,
        device_id: Optional[str] = None,
        include_resolved: bool = False,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        return self.store.list_alerts(device_id=device_id, include_resolved=include_resolved, limit=limit)

    def correlate(self, device_id: str, window_minutes: Optional[int] = None) -> List[CorrelationGroup]:
        """
        Group a device's unresolved alerts by type within a trailing window.

        Read-only: the underlying alerts are not merged or changed.

        Args:
            device_id: Device to inspect
            window_minutes: Trailing window (default from config)

        Returns:
            Groups with more than one alert, most severe first
        """
        window = window_minutes if window_minutes is not None else self.config.correlation_window_minutes
        since = self.clock() - timedelta(minutes=window)

        by_type: Dict[AlertType, List[Alert]] = {}
        for alert in self.store.list_open(device_id=device_id, since=since):
            by_type.setdefault(alert.alert_type, []).append(alert)

        groups = []
        for alert_type, alerts in by_type.items():
            if len(alerts) < 2:
                continue
            groups.append(
                CorrelationGroup(
                    device_id=device_id,
                    alert_type=alert_type,
                    count=len(alerts),
                    max_severity=max((a.severity for a in alerts), key=lambda s: s.rank),
                    alert_ids=[a.alert_id for a in alerts],
                    first_created_at=min(a.created_at for a in alerts),
                    last_created_at=max(a.created_at for a in alerts),
                )
            )

        groups.sort(key=lambda g: (-g.max_severity.rank, -g.count, g.alert_type.value))
        if groups:
            logger.info(f"Correlated {len(groups)} alert group(s) on {device_id} within {window}m")
        return groups

    def acknowledge(self, alert_id: str, by: str) -> Alert:
        """
        Acknowledge an alert, which stops its escalation.

        Acknowledging a resolved or already acknowledged alert changes nothing.

        Raises:
            NotFoundError: if no alert has this id
        """
        alert = self.get(alert_id)
        if alert.is_resolved or alert.acknowledged_at is not None:
            logger.debug(f"Acknowledge of alert {alert_id} ignored (state={alert.state.value})")
            return alert

        if self.store.mark_acknowledged(alert_id, by, self.clock()):
            logger.info(f"Alert {alert_id} acknowledged by {by}")
        return self.get(alert_id)

    def resolve(self, alert_id: str, by: str, auto_resolved: bool = False) -> Alert:
        """
        Resolve an alert. Terminal and idempotent.

        Raises:
            NotFoundError: if no alert has this id
        """
        alert = self.get(alert_id)
        if alert.is_resolved:
            logger.debug(f"Alert {alert_id} already resolved at {alert.resolved_at}")
            return alert

        if self.store.mark_resolved(alert_id, by, self.clock(), auto_resolved):
            logger.info(f"Alert {alert_id} resolved by {by} (auto={auto_resolved})")
        return self.get(alert_id)

    def resolve_cleared(self, device_id: str, current_issues: Iterable[str], source: str) -> List[str]:
        """
        Auto-resolve this source's alerts whose issue is no longer reported.

        Must run after the cycle's ``create`` calls for the same device.
        Alerts created with ``auto_resolve=False`` are left alone.

        Args:
            device_id: Device that was assessed
            current_issues: Titles of the issues present this cycle
            source: Subsystem whose alerts are reconciled

        Returns:
            Ids of the alerts that were resolved
        """
        present = set(current_issues)
        resolved = []
        for alert in self.store.list_open(device_id=device_id, source=source):
            if alert.title in present or not alert.auto_resolve:
                continue
            if self.store.mark_resolved(alert.alert_id, source, self.clock(), auto_resolved=True):
                resolved.append(alert.alert_id)
                logger.info(f"Auto-resolved alert {alert.alert_id} ({alert.title}) on {device_id}")
        return resolved

    def resolve_titled(self, device_id: str, title: str, source: str, by: str) -> List[str]:
        """Resolve this source's unresolved alert with the given title, if any."""
        resolved = []
        for alert in self.store.list_open(device_id=device_id, source=source):
            if alert.title == title and self.store.mark_resolved(alert.alert_id, by, self.clock(), True):
                resolved.append(alert.alert_id)
                logger.info(f"Alert {alert.alert_id} ({title}) resolved by {by}")
        return resolved

    def archive(self, days_old: Optional[int] = None) -> int:
        """
        Delete alerts resolved at least ``days_old`` days ago.

        Unresolved alerts are never touched.

        Returns:
            Number of deleted alerts
        """
        days = days_old if days_old is not None else self.config.archive_days
        if days < 0:
            raise ValueError("days_old must not be negative")

        cutoff = self.clock() - timedelta(days=days)
        deleted = self.store.delete_resolved_before(cutoff)
        logger.info(f"Archived {deleted} alert(s) resolved on or before {cutoff.isoformat()}")
        return deleted

    def get_stats(self) -> Dict[str, int]:
        return self.store.get_stats()

    def notify_created(self, alert: Alert) -> bool:
        """
        Send and record the creation notice for an alert at or above the
        notify severity. Delivery failure never raises.

        Returns:
            True if a notice was delivered
        """
        if not alert.severity.at_least(self.config.notify_min_severity):
            return False

        channels = list(self.config.initial_channels)
        delivered = False
        if self.dispatcher is not None:
            try:
                delivered = self.dispatcher.dispatch(alert_to_notification(alert, channels))
            except Exception as e:
                logger.error(f"Notification for alert {alert.alert_id} failed: {e}", exc_info=True)
        else:
            logger.debug(f"No dispatcher configured, skipping notice for {alert.alert_id}")

        self.store.append_notification(
            alert.alert_id,
            NotificationRecord(tier=0, channels=channels, sent_at=self.clock(), delivered=delivered),
        )
        return delivered
