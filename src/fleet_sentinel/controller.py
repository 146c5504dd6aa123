"""
Fleet Sentinel control plane.

Wires the stores, alert manager, escalation scheduler, assessment service
and workflow orchestrator together, and runs the periodic loops:
- health assessment sweep
- escalation sweep
- archival sweep
- scheduled workflows
- recovery of workflow runs abandoned by a dead process
"""

import asyncio
import logging
import os
import sys
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from . import __version__
from .alerts.classifier import IssueClassifier
from .alerts.manager import AlertManager
from .alerts.store import AlertStore
from .core.config import AppConfig, get_config
from .core.errors import ConfigurationError
from .core.time_util import utcnow
from .escalation.scheduler import EscalationScheduler
from .health_score.calculator import HealthScoreCalculator
from .health_score.service import AssessmentService
from .health_score.sources import HttpAgentMetricSource, MetricSource
from .inventory.store import InventoryStore
from .notifications.dispatcher import NotificationDispatcher
from .workflows.actions import ActionExecutor, HttpAgentExecutor, RemoteExecutor
from .workflows.definitions import WorkflowRegistry
from .workflows.orchestrator import WorkflowOrchestrator
from .workflows.store import ExecutionStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Granularity of the workflow schedule check
SCHEDULE_TICK_SECONDS = 60


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for an entry point (LOG_LEVEL env wins)."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", level or "INFO").upper(),
        format=LOG_FORMAT,
    )


class ControlPlane:
    """
    Owns every component of the control plane.

    Components get their own configuration section explicitly; nothing below
    this class reads global configuration.
    """

    def __init__(
        self,
        config: AppConfig,
        metric_source: Optional[MetricSource] = None,
        remote: Optional[RemoteExecutor] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize control plane.

        Args:
            config: Application configuration
            metric_source: Override the HTTP agent metric source
            remote: Override the HTTP agent action transport
            dispatcher: Override the configured notification dispatcher
            clock: Returns the current time; injectable for tests
        """
        self.config = config
        self.clock = clock
        db_path = config.storage.db_path

        self.inventory = InventoryStore(db_path)
        self.alert_store = AlertStore(db_path)
        self.execution_store = ExecutionStore(db_path)

        self.dispatcher = dispatcher or NotificationDispatcher.from_config(config.notifications)
        self.alert_manager = AlertManager(self.alert_store, config.alerts, self.dispatcher, clock)
        self.calculator = HealthScoreCalculator(config.scoring)
        self.metric_source = metric_source or HttpAgentMetricSource(
            config.assessment.agent_url,
            token=config.assessment.agent_token,
            timeout=config.assessment.probe_timeout_seconds,
        )

        self.registry = WorkflowRegistry()
        self.registry.load_from_file(config.workflows.definitions_path)
        self.executor = ActionExecutor(
            remote=remote or HttpAgentExecutor(config.workflows.agent_url, config.workflows.agent_token),
            dry_run=config.workflows.dry_run,
            alert_manager=self.alert_manager,
            dispatcher=self.dispatcher,
            metric_source=self.metric_source,
            calculator=self.calculator,
        )
        self.orchestrator = WorkflowOrchestrator(
            self.registry,
            self.execution_store,
            self.executor,
            config.workflows,
            alert_manager=self.alert_manager,
            clock=clock,
        )

        self.assessment = AssessmentService(
            self.metric_source,
            self.calculator,
            self.alert_manager,
            self.inventory,
            config.assessment,
            classifier=IssueClassifier(config.alerts.issue_rules),
            on_new_alert=self.orchestrator.handle_alert,
            clock=clock,
        )
        self.escalation = EscalationScheduler(
            self.alert_store,
            config.escalation.to_policy(),
            self.dispatcher,
            interval_seconds=config.escalation.interval_seconds,
            clock=clock,
        )

        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._last_scheduled: Dict[Tuple[str, str], datetime] = {}

    def fleet_summary(self) -> Dict[str, Any]:
        """Device counts plus open alert counts."""
        summary: Dict[str, Any] = self.inventory.fleet_summary()
        summary["alerts"] = self.alert_manager.get_stats()
        return summary

    async def run_archival_once(self) -> int:
        return await asyncio.to_thread(self.alert_manager.archive, self.config.alerts.archive_days)

    async def run_recovery_once(self) -> int:
        """Fail executions whose owning process (this one or another) stopped heartbeating."""
        return await asyncio.to_thread(self.orchestrator.recover_orphans)

    async def run_schedules_once(self, now: Optional[datetime] = None) -> List[str]:
        """
        Start every scheduled workflow run that is due.

        Returns:
            Ids of the started executions
        """
        now = now or self.clock()
        started = []

        for schedule in self.config.workflows.schedules:
            if "*" in schedule.devices:
                devices = await asyncio.to_thread(self.inventory.list_device_ids)
            else:
                devices = list(schedule.devices)

            for device_id in devices:
                key = (schedule.workflow, device_id)
                last = self._last_scheduled.get(key)
                if last is not None and now - last < timedelta(minutes=schedule.interval_minutes):
                    continue
                try:
                    execution_id = await self.orchestrator.start(
                        schedule.workflow, device_id, params=schedule.params, triggered_by="schedule"
                    )
                except ConfigurationError as e:
                    logger.error(f"Schedule for '{schedule.workflow}' is invalid: {e}")
                    break
                self._last_scheduled[key] = now
                started.append(execution_id)

        if started:
            logger.info(f"Started {len(started)} scheduled workflow run(s)")
        return started

    async def _loop(self, name: str, step: Callable[[], Awaitable[Any]], interval: float) -> None:
        logger.info(f"Starting {name} loop (interval: {interval}s)")
        while self.running:
            try:
                await step()
            except Exception as e:
                logger.error(f"Error in {name} loop: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def run(self) -> None:
        """Run all periodic loops until :meth:`stop` is called."""
        self.running = True

        self._tasks = [
            asyncio.create_task(self.assessment.run(), name="assessment"),
            asyncio.create_task(
                self._loop("recovery", self.run_recovery_once, self.config.workflows.lease_seconds),
                name="recovery",
            ),
            asyncio.create_task(
                self._loop("archival", self.run_archival_once, self.config.alerts.archive_interval_hours * 3600),
                name="archival",
            ),
        ]
        if self.config.escalation.enabled:
            self._tasks.append(asyncio.create_task(self.escalation.run(), name="escalation"))
        if self.config.workflows.schedules:
            self._tasks.append(
                asyncio.create_task(
                    self._loop("schedule", self.run_schedules_once, SCHEDULE_TICK_SECONDS),
                    name="schedule",
                )
            )

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Control plane loops cancelled")
        finally:
            await self.orchestrator.shutdown()
            await self.assessment.drain_notices()

    def stop(self) -> None:
        """Stop all periodic loops."""
        logger.info("Stopping control plane")
        self.running = False
        self.assessment.stop()
        self.escalation.stop()
        for task in self._tasks:
            task.cancel()


def main() -> None:
    """Main entry point for the control plane service (loops only, no API)."""
    config = get_config()
    setup_logging(config.log_level)

    logger.info("=" * 60)
    logger.info(f"Fleet Sentinel - Control Plane v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Database: {config.storage.db_path}")
    logger.info(f"Assessment Interval: {config.assessment.interval_seconds}s")
    logger.info(f"Escalation Interval: {config.escalation.interval_seconds}s")
    logger.info(f"Workflow Dry Run: {config.workflows.dry_run}")
    logger.info("=" * 60)

    control_plane = ControlPlane(config)
    try:
        asyncio.run(control_plane.run())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
        control_plane.stop()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
