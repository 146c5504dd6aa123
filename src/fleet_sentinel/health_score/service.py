"""
Health assessment service.

Periodically, for every device in the inventory:
1. Collect the score breakdown from the metric source
2. Calculate the health score
3. Raise alerts for present issues, then auto-resolve cleared ones
4. Write the device status
5. Deliver creation notices for new alerts in the background
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from ..alerts.classifier import IssueClassifier
from ..alerts.manager import AlertManager
from ..alerts.models import Alert
from ..core.config import AssessmentConfig
from ..core.errors import DependencyTimeoutError, DependencyUnavailableError
from ..core.models import AlertSeverity, AlertType, DeviceStatus
from ..core.time_util import utcnow
from ..inventory.store import InventoryStore
from .calculator import HealthScoreCalculator
from .models import AssessmentOutcome, HealthScore, HealthStatus
from .sources import MetricSource

logger = logging.getLogger(__name__)

UNREACHABLE_TITLE = "Device unreachable"
FAILED_TITLE = "Health assessment failed"

_DEVICE_STATUS = {
    HealthStatus.HEALTHY: DeviceStatus.ONLINE,
    HealthStatus.WARNING: DeviceStatus.WARNING,
    HealthStatus.CRITICAL: DeviceStatus.CRITICAL,
    HealthStatus.OFFLINE: DeviceStatus.OFFLINE,
}

NewAlertHandler = Callable[[Alert], Awaitable[None]]


class AssessmentService:
    """
    Service for the periodic health-assessment sweep.

    Devices are probed with bounded parallelism and every probe carries a
    timeout, so one slow device cannot stall the sweep. A device that times
    out or cannot be reached is marked Offline; any other probe failure marks
    it Unknown. Both raise a Critical Availability alert that clears on the
    next successful assessment.
    """

    def __init__(
        self,
        source: MetricSource,
        calculator: HealthScoreCalculator,
        alert_manager: AlertManager,
        inventory: InventoryStore,
        config: Optional[AssessmentConfig] = None,
        classifier: Optional[IssueClassifier] = None,
        on_new_alert: Optional[NewAlertHandler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize assessment service.

        Args:
            source: Where breakdowns come from
            calculator: Health score calculator
            alert_manager: Alert lifecycle manager
            inventory: Device store (device list and status writer)
            config: Sweep settings
            classifier: Maps issue strings to alert type/severity
            on_new_alert: Awaited for every alert this service newly creates
            clock: Returns the current time; injectable for tests
        """
        self.source = source
        self.calculator = calculator
        self.alert_manager = alert_manager
        self.inventory = inventory
        self.config = config or AssessmentConfig()
        self.classifier = classifier or IssueClassifier()
        self.on_new_alert = on_new_alert
        self.clock = clock
        self.running = False
        self._notice_tasks: Set[asyncio.Task] = set()

    async def assess_device(self, device_id: str) -> AssessmentOutcome:
        """
        Run one assessment cycle for a single device.

        Never raises; failures are reflected in the device status and an alert.
        """
        try:
            breakdown = await asyncio.wait_for(
                self.source.collect(device_id), timeout=self.config.probe_timeout_seconds
            )
        except (asyncio.TimeoutError, DependencyTimeoutError, DependencyUnavailableError) as e:
            logger.warning(f"Device {device_id} unreachable: {str(e) or 'probe timed out'}")
            return await self._record_failure(
                device_id, DeviceStatus.OFFLINE, UNREACHABLE_TITLE, str(e) or "Probe timed out"
            )
        except Exception as e:
            logger.error(f"Health assessment of {device_id} failed: {e}", exc_info=True)
            return await self._record_failure(device_id, DeviceStatus.UNKNOWN, FAILED_TITLE, str(e))

        if not breakdown.device_id:
            breakdown = breakdown.model_copy(update={"device_id": device_id})
        score = self.calculator.compute_health_score(breakdown)

        if score.status == HealthStatus.OFFLINE:
            # Availability 0: no other checks are meaningful
            return await self._record_failure(
                device_id, DeviceStatus.OFFLINE, UNREACHABLE_TITLE, "Availability score is 0", score
            )

        created, resolved = await asyncio.to_thread(self._reconcile, device_id, breakdown.issues)
        status = _DEVICE_STATUS[score.status]
        await asyncio.to_thread(
            self.inventory.update_status, device_id, status, score.total, self.clock()
        )
        self._send_notices(created)
        await self._fire_new_alerts(created)

        return AssessmentOutcome(
            device_id=device_id,
            device_status=status,
            score=score,
            created_alerts=[a.alert_id for a in created],
            resolved_alerts=resolved,
        )

    def _reconcile(self, device_id: str, issues: List[str]) -> Tuple[List[Alert], List[str]]:
        """Create alerts for present issues, then resolve the ones that cleared."""
        created = []
        for issue in dict.fromkeys(issues):
            alert_type, severity = self.classifier.classify(issue)
            alert, is_new = self.alert_manager.create_with_status(
                device_id=device_id,
                alert_type=alert_type,
                severity=severity,
                title=issue,
                message=f"{issue} detected on {device_id}",
                source=self.config.source,
                notify=False,
            )
            if is_new:
                created.append(alert)

        resolved = self.alert_manager.resolve_cleared(device_id, issues, self.config.source)
        return created, resolved

    async def _record_failure(
        self,
        device_id: str,
        status: DeviceStatus,
        title: str,
        detail: str,
        score: Optional[HealthScore] = None,
    ) -> AssessmentOutcome:
        def record() -> Tuple[Alert, bool]:
            alert, is_new = self.alert_manager.create_with_status(
                device_id=device_id,
                alert_type=AlertType.AVAILABILITY,
                severity=AlertSeverity.CRITICAL,
                title=title,
                message=f"{title}: {detail}",
                source=self.config.source,
                notify=False,
            )
            self.inventory.update_status(device_id, status)
            return alert, is_new

        alert, is_new = await asyncio.to_thread(record)
        if is_new:
            self._send_notices([alert])
            await self._fire_new_alerts([alert])

        return AssessmentOutcome(
            device_id=device_id,
            device_status=status,
            score=score,
            created_alerts=[alert.alert_id] if is_new else [],
            error=detail,
        )

    def _send_notices(self, alerts: List[Alert]) -> None:
        """Deliver creation notices in the background; the cycle does not wait on providers."""
        if not alerts:
            return

        def deliver() -> None:
            for alert in alerts:
                self.alert_manager.notify_created(alert)

        task = asyncio.create_task(asyncio.to_thread(deliver), name=f"notices-{alerts[0].device_id}")
        self._notice_tasks.add(task)
        task.add_done_callback(self._notice_tasks.discard)

    async def drain_notices(self) -> None:
        """Wait for creation notices still being delivered."""
        if self._notice_tasks:
            await asyncio.gather(*list(self._notice_tasks), return_exceptions=True)

    async def _fire_new_alerts(self, alerts: List[Alert]) -> None:
        if self.on_new_alert is None:
            return
        for alert in alerts:
            try:
                await self.on_new_alert(alert)
            except Exception as e:
                logger.error(f"New-alert handler failed for {alert.alert_id}: {e}", exc_info=True)

    async def run_once(self, device_ids: Optional[List[str]] = None) -> List[AssessmentOutcome]:
        """
        Run one assessment sweep.

        Args:
            device_ids: Devices to assess (default: the whole inventory)

        Returns:
            One outcome per device
        """
        if device_ids is None:
            device_ids = await asyncio.to_thread(self.inventory.list_device_ids)
        if not device_ids:
            logger.debug("No devices to assess")
            return []

        semaphore = asyncio.Semaphore(self.config.max_parallel)

        async def bounded(device_id: str) -> AssessmentOutcome:
            async with semaphore:
                return await self.assess_device(device_id)

        outcomes = await asyncio.gather(*(bounded(d) for d in device_ids))

        failed = sum(1 for o in outcomes if o.error)
        logger.info(f"Assessment sweep finished: {len(outcomes)} device(s), {failed} unreachable/failed")
        return list(outcomes)

    async def run(self) -> None:
        """Run assessment sweeps continuously."""
        self.running = True
        logger.info(f"Starting assessment service (interval: {self.config.interval_seconds}s)")

        iteration = 0
        while self.running:
            iteration += 1
            logger.debug(f"Assessment iteration {iteration}")
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in assessment sweep: {e}", exc_info=True)
            await asyncio.sleep(self.config.interval_seconds)

    def stop(self) -> None:
        """Stop assessment service."""
        logger.info("Stopping assessment service")
        self.running = False
