"""
Workflow action executors.

Remote actions (script, command, restart_service) go through a
:class:`RemoteExecutor` transport and respect dry_run mode. Built-in actions
act on the control plane itself and always run.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from ..alerts.manager import AlertManager
from ..core.errors import (
    ActionFailedError,
    ConfigurationError,
    DependencyTimeoutError,
    DependencyUnavailableError,
)
from ..health_score.calculator import HealthScoreCalculator
from ..health_score.models import HealthStatus
from ..health_score.sources import MetricSource
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.models import Notification
from .models import ActionKind, NotifyAction, WorkflowStep

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def render(template: Optional[str], params: Dict[str, Any]) -> Optional[str]:
    """
    Substitute ``{{name}}`` placeholders from params.

    Unknown placeholders are left as they are.
    """
    if template is None:
        return None

    def substitute(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in params:
            logger.warning(f"No value for placeholder '{key}' in '{template}'")
            return match.group(0)
        return str(params[key])

    return _PLACEHOLDER.sub(substitute, template)


class RemoteResult(BaseModel):
    """What the endpoint reported for a remote action."""

    exit_code: int = 0
    output: str = ""


class RemoteExecutor(ABC):
    """Transport that runs actions on managed endpoints."""

    @abstractmethod
    async def run(
        self, device_id: str, kind: ActionKind, payload: Dict[str, Any], timeout: float
    ) -> RemoteResult:
        """
        Run an action on a device.

        Raises:
            DependencyTimeoutError: if the endpoint did not answer in time
            DependencyUnavailableError: if the endpoint or gateway is unreachable
        """
        pass


class HttpAgentExecutor(RemoteExecutor):
    """
    Runs actions through the endpoint agent gateway.

    ``POST {base_url}/api/actions/execute`` with the device, action kind and
    payload; the gateway answers with ``{"exit_code", "output"}``.
    """

    def __init__(self, base_url: str, token: str = ""):
        self.base_url = base_url.rstrip("/")
        self.headers = {"User-Agent": "Fleet-Sentinel/0.3"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def run(
        self, device_id: str, kind: ActionKind, payload: Dict[str, Any], timeout: float
    ) -> RemoteResult:
        body = {"device_id": device_id, "kind": kind.value, "payload": payload, "timeout": timeout}
        try:
            async with httpx.AsyncClient(timeout=timeout, headers=self.headers) as client:
                response = await client.post(f"{self.base_url}/api/actions/execute", json=body)
                response.raise_for_status()
                return RemoteResult(**response.json())
        except httpx.TimeoutException as e:
            raise DependencyTimeoutError(
                f"{kind.value} on {device_id} timed out", timeout=timeout, device_id=device_id
            ) from e
        except httpx.HTTPError as e:
            raise DependencyUnavailableError(
                f"{kind.value} on {device_id} failed: {e}", device_id=device_id
            ) from e


class ActionExecutor:
    """
    Executes workflow step actions with safety controls.

    Supports both dry-run simulation and actual execution of remote actions.
    Returns the step output on success and raises on failure.
    """

    def __init__(
        self,
        remote: Optional[RemoteExecutor] = None,
        dry_run: bool = True,
        alert_manager: Optional[AlertManager] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        metric_source: Optional[MetricSource] = None,
        calculator: Optional[HealthScoreCalculator] = None,
    ):
        """
        Initialize action executor.

        Args:
            remote: Transport for remote actions
            dry_run: If True, only simulate remote actions
            alert_manager: Needed by resolve_alerts
            dispatcher: Needed by notify
            metric_source: Needed by health_check
            calculator: Scores health_check snapshots
        """
        self.remote = remote
        self.dry_run = dry_run
        self.alert_manager = alert_manager
        self.dispatcher = dispatcher
        self.metric_source = metric_source
        self.calculator = calculator or HealthScoreCalculator()

        if self.dry_run:
            logger.info("ActionExecutor initialized in DRY RUN mode - remote actions will not be executed")
        else:
            logger.warning("ActionExecutor initialized in LIVE mode - remote actions WILL be executed")

    async def execute(
        self,
        step: WorkflowStep,
        device_id: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = 300.0,
    ) -> str:
        """
        Execute one step's action against a device.

        Args:
            step: Step to run
            device_id: Target device
            params: Values for ``{{placeholders}}`` (``device_id`` is always set)
            timeout: Timeout handed to the remote transport

        Returns:
            Step output

        Raises:
            ActionFailedError, DependencyTimeoutError, DependencyUnavailableError,
            ConfigurationError
        """
        values = dict(params or {})
        values.setdefault("device_id", device_id)
        action = step.action
        arguments = render(step.arguments, values)

        logger.info(
            f"{'[DRY RUN] ' if self.dry_run else ''}Executing step '{step.name}' "
            f"({action.kind}) on {device_id}"
        )

        kind = ActionKind(action.kind)
        if kind == ActionKind.SCRIPT:
            return await self._run_remote(
                device_id, kind, {"path": render(action.path, values), "arguments": arguments}, timeout
            )
        elif kind == ActionKind.COMMAND:
            command = render(action.command, values)
            if arguments:
                command = f"{command} {arguments}"
            return await self._run_remote(device_id, kind, {"command": command}, timeout)
        elif kind == ActionKind.RESTART_SERVICE:
            return await self._run_remote(
                device_id, kind, {"service": render(action.service, values)}, timeout
            )
        elif kind == ActionKind.HEALTH_CHECK:
            return await self.execute_health_check(device_id, arguments)
        elif kind == ActionKind.RESOLVE_ALERTS:
            return await self.execute_resolve_alerts(device_id, arguments, values.get("execution_id"))
        elif kind == ActionKind.NOTIFY:
            return await self.execute_notify(device_id, action, arguments)
        elif kind == ActionKind.WAIT:
            return await self.execute_wait(arguments)
        else:
            raise ConfigurationError(f"Unknown action kind: {kind}")

    async def _run_remote(
        self, device_id: str, kind: ActionKind, payload: Dict[str, Any], timeout: float
    ) -> str:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would run {kind.value} on {device_id}: {payload}")
            return f"[DRY RUN] {kind.value} {payload}"

        if self.remote is None:
            raise DependencyUnavailableError("No remote executor configured")

        result = await self.remote.run(device_id, kind, payload, timeout)
        if result.exit_code != 0:
            raise ActionFailedError(
                f"{kind.value} exited with code {result.exit_code}: {result.output.strip()}",
                exit_code=result.exit_code,
            )
        return result.output

    async def execute_health_check(self, device_id: str, arguments: Optional[str]) -> str:
        """
        Re-probe the device.

        Fails when the device is Critical/Offline, or below the minimum total
        given as the step argument.
        """
        if self.metric_source is None:
            raise DependencyUnavailableError("No metric source configured for health_check")

        breakdown = await self.metric_source.collect(device_id)
        score = self.calculator.compute_health_score(breakdown)
        summary = f"Health score {score.total}/100 ({score.status.value})"

        if arguments:
            try:
                minimum = int(arguments)
            except ValueError:
                raise ConfigurationError(f"health_check argument must be an integer: {arguments}")
            if score.total < minimum:
                raise ActionFailedError(f"{summary} is below {minimum}")
        elif score.status in (HealthStatus.CRITICAL, HealthStatus.OFFLINE):
            raise ActionFailedError(summary)

        return summary

    async def execute_resolve_alerts(
        self, device_id: str, title_filter: Optional[str], execution_id: Optional[str] = None
    ) -> str:
        """Resolve the device's open alerts whose title contains the filter (all if empty)."""
        if self.alert_manager is None:
            raise DependencyUnavailableError("No alert manager configured for resolve_alerts")

        by = f"workflow:{execution_id}" if execution_id else "workflow"

        def resolve() -> int:
            count = 0
            for alert in self.alert_manager.list_alerts(device_id=device_id):
                if title_filter and title_filter.lower() not in alert.title.lower():
                    continue
                self.alert_manager.resolve(alert.alert_id, by)
                count += 1
            return count

        count = await asyncio.to_thread(resolve)
        return f"Resolved {count} alert(s)"

    async def execute_notify(self, device_id: str, action: NotifyAction, message: Optional[str]) -> str:
        """Send a notification; delivery failure does not fail the step."""
        if self.dispatcher is None:
            logger.warning("No dispatcher configured, notify step skipped")
            return "No dispatcher configured"

        notification = Notification(
            subject=f"Workflow notice for {device_id}",
            message=message or "",
            channels=list(action.channels),
            device_id=device_id,
        )
        delivered = await asyncio.to_thread(self.dispatcher.dispatch, notification)
        return "Notification delivered" if delivered else "Notification not delivered"

    async def execute_wait(self, arguments: Optional[str]) -> str:
        try:
            seconds = float(arguments or 0)
        except ValueError:
            raise ConfigurationError(f"wait argument must be a number of seconds: {arguments}")
        await asyncio.sleep(seconds)
        return f"Waited {seconds:g}s"
