"""
Escalation scheduler.

Periodically promotes unresolved, unacknowledged alerts through the
configured tiers.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..alerts.models import Alert, NotificationRecord
from ..alerts.store import AlertStore
from ..core.models import AlertSeverity
from ..core.time_util import utcnow
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.formatters import alert_to_notification
from .models import EscalationPolicy, EscalationResult

logger = logging.getLogger(__name__)


def next_tier(alert: Alert, policy: EscalationPolicy, now: datetime) -> Optional[int]:
    """
    Decide whether an alert is due for promotion.

    The clock for the current tier starts at the last escalation (or at
    creation for tier 0). Outside the alert's business-hours window only
    Critical alerts advance.

    Returns:
        The tier to advance to (always current + 1), or None
    """
    if alert.is_resolved or alert.acknowledged_at is not None:
        return None

    current = alert.escalation_tier
    if current >= policy.final_tier:
        return None

    timeout = policy.tiers[current].timeout_minutes
    if timeout is None:
        return None

    started = alert.last_escalated_at or alert.created_at
    if now - started < timedelta(minutes=timeout):
        return None

    if alert.severity != AlertSeverity.CRITICAL:
        window = policy.window_for(alert.alert_type.value)
        if window is not None and not window.contains(now):
            return None

    return current + 1


class EscalationScheduler:
    """
    Sweeps open alerts and advances each due alert by exactly one tier.

    Advancement is recorded with a compare-and-set on the stored tier, so
    overlapping sweeps cannot double-advance an alert. A failed notification
    does not roll the tier back.
    """

    def __init__(
        self,
        store: AlertStore,
        policy: Optional[EscalationPolicy] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize escalation scheduler.

        Args:
            store: Alert storage
            policy: Tiers, business hours and on-call roster
            dispatcher: Notification dispatcher (optional)
            interval_seconds: Sweep interval for :meth:`run`
            clock: Returns the current time; injectable for tests
        """
        self.store = store
        self.policy = policy or EscalationPolicy()
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.running = False

        logger.info(
            f"EscalationScheduler initialized with tiers: "
            f"{[t.name for t in self.policy.tiers]}"
        )

    def sweep(self, now: Optional[datetime] = None) -> List[EscalationResult]:
        """
        Run one escalation pass.

        Args:
            now: Evaluation time (defaults to the clock)

        Returns:
            One result per alert that advanced
        """
        now = now or self.clock()
        results = []

        for alert in self.store.list_open(unacknowledged_only=True):
            target = next_tier(alert, self.policy, now)
            if target is None:
                continue

            if not self.store.advance_tier(alert.alert_id, alert.escalation_tier, target, now):
                logger.debug(f"Alert {alert.alert_id} changed during sweep, skipping")
                continue

            results.append(self._notify(alert, target, now))

        if results:
            logger.info(f"Escalation sweep advanced {len(results)} alert(s)")
        return results

    def _notify(self, alert: Alert, target: int, now: datetime) -> EscalationResult:
        tier = self.policy.tiers[target]
        recipients = []
        if tier.notify_on_call:
            on_call = self.policy.on_call.current(now)
            if on_call:
                recipients.append(on_call)

        logger.warning(
            f"Escalating alert {alert.alert_id} ({alert.title} on {alert.device_id}) "
            f"to tier {target} '{tier.name}'"
        )

        notified = False
        if tier.channels and self.dispatcher is not None:
            notification = alert_to_notification(
                alert, tier.channels, tier=target, tier_name=tier.name, recipients=recipients
            )
            try:
                notified = self.dispatcher.dispatch(notification)
            except Exception as e:
                logger.error(f"Escalation notice for {alert.alert_id} failed: {e}", exc_info=True)

        if tier.channels:
            self.store.append_notification(
                alert.alert_id,
                NotificationRecord(
                    tier=target,
                    channels=list(tier.channels),
                    recipients=recipients,
                    sent_at=now,
                    delivered=notified,
                ),
            )

        return EscalationResult(
            alert_id=alert.alert_id,
            from_tier=alert.escalation_tier,
            to_tier=target,
            tier_name=tier.name,
            channels=list(tier.channels),
            recipients=recipients,
            escalated_at=now,
            notified=notified,
        )

    async def run_once(self) -> List[EscalationResult]:
        """Run one sweep off the event loop."""
        return await asyncio.to_thread(self.sweep)

    async def run(self) -> None:
        """Run escalation sweeps continuously."""
        self.running = True
        logger.info(f"Starting escalation scheduler (interval: {self.interval_seconds}s)")

        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in escalation sweep: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        """Stop escalation scheduler."""
        logger.info("Stopping escalation scheduler")
        self.running = False
