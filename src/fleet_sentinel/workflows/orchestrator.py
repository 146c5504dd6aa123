"""
Workflow orchestrator.

Runs a workflow's steps strictly in order against one device and keeps the
execution record current after every step. ``start`` is fire-and-forget;
callers poll ``status``.

Several orchestrators (the loops process, the API process, the CLI) may
share one database. Each Running record is leased by the orchestrator that
runs it; the others only ever act on it through the record itself.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..alerts.manager import AlertManager
from ..alerts.models import Alert
from ..core.config import WorkflowConfig
from ..core.errors import ConfigurationError, DependencyTimeoutError, FleetError, NotFoundError
from ..core.models import AlertSeverity, AlertType
from ..core.time_util import utcnow
from .actions import ActionExecutor
from .definitions import WorkflowRegistry
from .models import (
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
)
from .store import ExecutionStore

logger = logging.getLogger(__name__)

FAILURE_SOURCE = "Workflow-Orchestrator"
ABANDONED_ERROR = "Interrupted: owning process stopped heartbeating"


def failure_alert_title(workflow_name: str) -> str:
    return f"Workflow '{workflow_name}' failed"


class WorkflowOrchestrator:
    """
    Starts, runs and tracks workflow executions.

    ``Running -> Completed`` or ``Running -> Failed``. A failing required
    step stops the run; a failing optional step is logged and skipped over.
    No compensating actions run automatically: rollback has to be written as
    explicit steps. Executions may run concurrently, also against the same
    device.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        store: ExecutionStore,
        executor: ActionExecutor,
        config: Optional[WorkflowConfig] = None,
        alert_manager: Optional[AlertManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize workflow orchestrator.

        Args:
            registry: Static workflow definitions
            store: Execution storage
            executor: Runs step actions
            config: Timeouts, leases, failure alerting and triggers
            alert_manager: Raises/clears workflow failure alerts (optional)
            clock: Returns the current time; injectable for tests
        """
        self.registry = registry
        self.store = store
        self.executor = executor
        self.config = config or WorkflowConfig()
        self.alert_manager = alert_manager
        self.clock = clock
        self.owner_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self._tasks: Dict[str, asyncio.Task] = {}

    async def start(
        self,
        workflow_name: str,
        device_id: str,
        params: Optional[Dict[str, Any]] = None,
        deadline_seconds: Optional[float] = None,
        triggered_by: str = "manual",
    ) -> str:
        """
        Start a workflow in the background.

        Args:
            workflow_name: Name of a registered definition
            device_id: Target device
            params: Values for step ``{{placeholders}}``
            deadline_seconds: Overall deadline (default from config, None = no deadline)
            triggered_by: Who or what started the run

        Returns:
            Execution id

        Raises:
            ConfigurationError: if the workflow is unknown; no record is created
        """
        execution, definition, deadline = await self._prepare(
            workflow_name, device_id, params, deadline_seconds, triggered_by
        )

        task = asyncio.create_task(
            self._execute(execution, definition, deadline),
            name=f"workflow-{execution.execution_id}",
        )
        self._tasks[execution.execution_id] = task
        task.add_done_callback(lambda _t, eid=execution.execution_id: self._tasks.pop(eid, None))
        return execution.execution_id

    async def run_to_completion(
        self,
        workflow_name: str,
        device_id: str,
        params: Optional[Dict[str, Any]] = None,
        deadline_seconds: Optional[float] = None,
        triggered_by: str = "manual",
    ) -> WorkflowExecution:
        """Run a workflow in the caller's task and return the terminal record."""
        execution, definition, deadline = await self._prepare(
            workflow_name, device_id, params, deadline_seconds, triggered_by
        )
        return await self._execute(execution, definition, deadline)

    async def wait(self, execution_id: str) -> WorkflowExecution:
        """Wait for a background execution to finish and return its record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return await asyncio.to_thread(self.status, execution_id)

    def status(self, execution_id: str) -> WorkflowExecution:
        """
        Look up an execution.

        Raises:
            NotFoundError: if no execution has this id
        """
        execution = self.store.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def history(self, limit: int = 20, device_id: Optional[str] = None) -> List[WorkflowExecution]:
        """Most recent executions across all devices (or one device), newest first."""
        return self.store.history(limit=limit, device_id=device_id)

    def list_definitions(self) -> List[WorkflowDefinition]:
        return self.registry.list_definitions()

    async def stop(self, execution_id: str, by: str = "operator") -> WorkflowExecution:
        """
        Ask a running execution to stop.

        The request is stored on the record and honoured by the owning run
        before its next step starts, whichever process runs it; a step
        already in flight is not interrupted. Stopping a finished execution
        changes nothing. A Running record whose owner stopped heartbeating
        is marked Failed at once.

        Raises:
            NotFoundError: if no execution has this id
        """
        execution = await asyncio.to_thread(self.status, execution_id)
        if execution.is_terminal:
            logger.debug(f"Execution {execution_id} already {execution.status.value}, stop ignored")
            return execution

        if await asyncio.to_thread(self.store.request_stop, execution_id, by):
            logger.info(f"Stop requested for execution {execution_id} by {by}")

        abandoned = await asyncio.to_thread(
            self.store.fail_if_abandoned, execution_id, self._stale_before(), self.clock(), f"Stopped by {by}"
        )
        if abandoned:
            logger.warning(f"Execution {execution_id} had no live owner; marked Failed")
        return await asyncio.to_thread(self.status, execution_id)

    def recover_orphans(self) -> int:
        """
        Fail Running records whose lease has run out.

        Runs at startup and periodically afterwards: an execution whose
        owning process died can never finish on its own. Runs that are still
        heartbeating, in this process or another, are left alone.
        """
        stale_before = self._stale_before()
        count = 0
        for execution in self.store.list_running():
            if self.store.fail_if_abandoned(execution.execution_id, stale_before, self.clock(), ABANDONED_ERROR):
                logger.warning(
                    f"Execution {execution.execution_id} ({execution.workflow_name}) owned by "
                    f"{execution.owner_id} was abandoned; marked Failed"
                )
                count += 1

        if count:
            logger.warning(f"Marked {count} abandoned execution(s) as Failed")
        return count

    async def handle_alert(self, alert: Alert) -> List[str]:
        """
        Start the workflows whose trigger matches a newly created alert.

        Returns:
            Ids of the started executions
        """
        started = []
        for trigger in self.config.triggers:
            if not trigger.matches(alert.alert_type, alert.title, alert.severity):
                continue
            try:
                execution_id = await self.start(
                    trigger.workflow,
                    alert.device_id,
                    params={"alert_id": alert.alert_id, "alert_title": alert.title},
                    triggered_by=f"alert:{alert.alert_id}",
                )
            except ConfigurationError as e:
                logger.error(f"Trigger for alert {alert.alert_id} names a bad workflow: {e}")
                continue
            logger.info(
                f"Alert {alert.alert_id} ({alert.title}) triggered workflow "
                f"'{trigger.workflow}' as {execution_id}"
            )
            started.append(execution_id)
        return started

    async def shutdown(self) -> None:
        """Wait for background executions to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} running workflow(s)")
            await asyncio.gather(*tasks, return_exceptions=True)

    def _stale_before(self) -> datetime:
        return self.clock() - timedelta(seconds=self.config.lease_seconds)

    async def _prepare(
        self,
        workflow_name: str,
        device_id: str,
        params: Optional[Dict[str, Any]],
        deadline_seconds: Optional[float],
        triggered_by: str,
    ) -> Tuple[WorkflowExecution, WorkflowDefinition, Optional[float]]:
        definition = self.registry.get(workflow_name)
        if not device_id:
            raise ConfigurationError("A target device_id is required")

        deadline = deadline_seconds if deadline_seconds is not None else self.config.default_deadline_seconds
        if deadline is not None and deadline <= 0:
            raise ConfigurationError(f"Deadline must be positive: {deadline}")

        now = self.clock()
        execution = WorkflowExecution(
            execution_id=uuid.uuid4().hex,
            workflow_name=definition.name,
            device_id=device_id,
            started_at=now,
            params=dict(params or {}),
            triggered_by=triggered_by,
            owner_id=self.owner_id,
            heartbeat_at=now,
        )
        await asyncio.to_thread(self.store.save, execution)

        logger.info(
            f"Started workflow '{definition.name}' on {device_id} "
            f"(execution={execution.execution_id}, by={triggered_by})"
        )
        return execution, definition, deadline

    async def _save(self, execution: WorkflowExecution) -> bool:
        execution.heartbeat_at = self.clock()
        return await asyncio.to_thread(self.store.save, execution)

    async def _heartbeat(self, execution_id: str) -> None:
        """Renew the lease until cancelled or until the record is taken over."""
        interval = self.config.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                owned = await asyncio.to_thread(self.store.heartbeat, execution_id, self.owner_id, self.clock())
            except Exception as e:
                logger.error(f"Heartbeat for execution {execution_id} failed: {e}", exc_info=True)
                continue
            if not owned:
                logger.warning(f"Execution {execution_id} is no longer owned by {self.owner_id}")
                return

    async def _execute(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        deadline_seconds: Optional[float],
    ) -> WorkflowExecution:
        params = {
            **execution.params,
            "device_id": execution.device_id,
            "execution_id": execution.execution_id,
        }
        heartbeat = asyncio.create_task(
            self._heartbeat(execution.execution_id), name=f"heartbeat-{execution.execution_id}"
        )

        try:
            for step in definition.steps:
                stopped_by = await asyncio.to_thread(self.store.stop_requested_by, execution.execution_id)
                if stopped_by is not None:
                    return await self._finish(execution, WorkflowStatus.FAILED, error=f"Stopped by {stopped_by}")

                timeout = step.timeout_seconds or self.config.default_step_timeout_seconds
                bounded_by_deadline = False
                if deadline_seconds is not None:
                    elapsed = (self.clock() - execution.started_at).total_seconds()
                    remaining = deadline_seconds - elapsed
                    if remaining <= 0:
                        # Nothing ran for this step, so no step is named
                        return await self._finish(
                            execution,
                            WorkflowStatus.FAILED,
                            error=f"Workflow deadline of {deadline_seconds:g}s exceeded",
                        )
                    if remaining < timeout:
                        timeout = remaining
                        bounded_by_deadline = True

                result, timed_out = await self._run_step(step, execution.device_id, params, timeout)
                execution.steps.append(result)
                if not await self._save(execution):
                    return await self._taken_over(execution)

                if result.status != StepStatus.FAILED:
                    continue

                if timed_out and bounded_by_deadline:
                    return await self._finish(
                        execution,
                        WorkflowStatus.FAILED,
                        failed_step=step.name,
                        error=f"Workflow deadline of {deadline_seconds:g}s exceeded",
                    )
                if step.required:
                    return await self._finish(
                        execution, WorkflowStatus.FAILED, failed_step=step.name, error=result.error
                    )
                logger.warning(
                    f"Optional step '{step.name}' of execution {execution.execution_id} "
                    f"failed, continuing: {result.error}"
                )

            return await self._finish(execution, WorkflowStatus.COMPLETED)

        except Exception as e:
            logger.error(f"Execution {execution.execution_id} crashed: {e}", exc_info=True)
            return await self._finish(execution, WorkflowStatus.FAILED, error=f"Internal error: {e}")
        finally:
            heartbeat.cancel()

    async def _taken_over(self, execution: WorkflowExecution) -> WorkflowExecution:
        """The record was failed by another orchestrator; issue no further steps."""
        stored = await asyncio.to_thread(self.status, execution.execution_id)
        logger.warning(
            f"Execution {execution.execution_id} was closed elsewhere ({stored.status.value}: "
            f"{stored.error}); {len(execution.steps)} step(s) ran here, last not recorded"
        )
        return stored

    async def _run_step(
        self, step: WorkflowStep, device_id: str, params: Dict[str, Any], timeout: float
    ) -> Tuple[StepResult, bool]:
        """Run one step. Returns the result and whether it failed by timing out."""
        timestamp = self.clock()
        t0 = time.perf_counter()
        output = None
        error = None
        timed_out = False

        try:
            output = await asyncio.wait_for(
                self.executor.execute(step, device_id, params, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            error = f"Step timed out after {timeout:g}s"
            timed_out = True
        except DependencyTimeoutError as e:
            error = f"{e.code}: {e.message}"
            timed_out = True
        except FleetError as e:
            error = f"{e.code}: {e.message}"
        except Exception as e:
            logger.error(f"Step '{step.name}' raised: {e}", exc_info=True)
            error = str(e) or e.__class__.__name__

        duration_ms = round((time.perf_counter() - t0) * 1000, 3)
        status = StepStatus.FAILED if error is not None else StepStatus.SUCCESS
        if error:
            logger.warning(f"Step '{step.name}' on {device_id} failed after {duration_ms}ms: {error}")
        else:
            logger.info(f"Step '{step.name}' on {device_id} succeeded in {duration_ms}ms")

        return (
            StepResult(
                step_name=step.name,
                status=status,
                duration_ms=duration_ms,
                output=output,
                error=error,
                timestamp=timestamp,
            ),
            timed_out,
        )

    async def _finish(
        self,
        execution: WorkflowExecution,
        status: WorkflowStatus,
        failed_step: Optional[str] = None,
        error: Optional[str] = None,
    ) -> WorkflowExecution:
        execution.status = status
        execution.completed_at = self.clock()
        execution.failed_step = failed_step
        execution.error = error
        if not await self._save(execution):
            return await self._taken_over(execution)

        if status == WorkflowStatus.COMPLETED:
            logger.info(f"Execution {execution.execution_id} ({execution.workflow_name}) completed")
        else:
            logger.warning(
                f"Execution {execution.execution_id} ({execution.workflow_name}) failed"
                f"{f' at step {failed_step}' if failed_step else ''}: {error}"
            )

        try:
            await asyncio.to_thread(self._update_failure_alert, execution)
        except Exception as e:
            logger.error(f"Could not update failure alert for {execution.execution_id}: {e}", exc_info=True)
        return execution

    def _update_failure_alert(self, execution: WorkflowExecution) -> None:
        """Raise an alert for a failed run; clear it when a later run completes."""
        if self.alert_manager is None or not self.config.alert_on_failure:
            return

        title = failure_alert_title(execution.workflow_name)
        if execution.status == WorkflowStatus.COMPLETED:
            self.alert_manager.resolve_titled(
                execution.device_id, title, FAILURE_SOURCE, by=f"workflow:{execution.execution_id}"
            )
        elif execution.error and execution.error.startswith("Stopped by"):
            return
        else:
            where = f" at step '{execution.failed_step}'" if execution.failed_step else ""
            self.alert_manager.create(
                device_id=execution.device_id,
                alert_type=AlertType.CUSTOM,
                severity=AlertSeverity.HIGH,
                title=title,
                message=f"Execution {execution.execution_id} failed{where}: {execution.error}",
                source=FAILURE_SOURCE,
            )
