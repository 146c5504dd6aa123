"""
Workflow data models: actions, definitions, executions, triggers and schedules.
"""

from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..core.errors import ConfigurationError
from ..core.models import AlertSeverity, AlertType


class ActionKind(str, Enum):
    """Kinds of actions a workflow step can run."""

    SCRIPT = "script"
    COMMAND = "command"
    RESTART_SERVICE = "restart_service"
    HEALTH_CHECK = "health_check"
    RESOLVE_ALERTS = "resolve_alerts"
    NOTIFY = "notify"
    WAIT = "wait"


SCRIPT_SUFFIXES = (".ps1", ".sh", ".py", ".bat", ".cmd")


class ScriptAction(BaseModel):
    """Run a script file on the target device."""

    kind: Literal["script"] = "script"
    path: str


class CommandAction(BaseModel):
    """Run a single command line on the target device."""

    kind: Literal["command"] = "command"
    command: str


class RestartServiceAction(BaseModel):
    """Restart a named service on the target device."""

    kind: Literal["restart_service"] = "restart_service"
    service: str


class HealthCheckAction(BaseModel):
    """Probe the device and fail when it is not healthy."""

    kind: Literal["health_check"] = "health_check"


class ResolveAlertsAction(BaseModel):
    """Resolve the device's unresolved alerts whose title contains the step argument."""

    kind: Literal["resolve_alerts"] = "resolve_alerts"


class NotifyAction(BaseModel):
    """Send the step argument as a notification."""

    kind: Literal["notify"] = "notify"
    channels: List[str] = Field(default_factory=lambda: ["team"])


class WaitAction(BaseModel):
    """Pause for the number of seconds given in the step argument."""

    kind: Literal["wait"] = "wait"


Action = Annotated[
    Union[
        ScriptAction,
        CommandAction,
        RestartServiceAction,
        HealthCheckAction,
        ResolveAlertsAction,
        NotifyAction,
        WaitAction,
    ],
    Field(discriminator="kind"),
]

_action_adapter = TypeAdapter(Action)


def parse_action_ref(ref: Union[str, Dict[str, Any]]) -> Action:
    """
    Resolve a step's action reference into a concrete action.

    Accepted forms:
        "scripts/clear-temp.ps1"   -> script (by file suffix)
        "service:Spooler"          -> restart_service
        "builtin:health_check"     -> built-in kind
        {"kind": "notify", ...}    -> explicit mapping
        anything else              -> command

    Raises:
        ConfigurationError: if the reference is empty or names an unknown built-in
    """
    if isinstance(ref, dict):
        try:
            return _action_adapter.validate_python(ref)
        except ValueError as e:
            raise ConfigurationError(f"Invalid action definition {ref}: {e}")

    ref = (ref or "").strip()
    if not ref:
        raise ConfigurationError("Action reference must not be empty")

    if ref.startswith("builtin:"):
        name = ref.split(":", 1)[1]
        try:
            kind = ActionKind(name)
        except ValueError:
            raise ConfigurationError(f"Unknown built-in action: {name}")
        if kind in (ActionKind.SCRIPT, ActionKind.COMMAND, ActionKind.RESTART_SERVICE):
            raise ConfigurationError(f"Action '{name}' is not a built-in")
        return _action_adapter.validate_python({"kind": kind.value})

    if ref.startswith("service:"):
        service = ref.split(":", 1)[1].strip()
        if not service:
            raise ConfigurationError("service: reference needs a service name")
        return RestartServiceAction(service=service)

    if PurePath(ref.split()[0]).suffix.lower() in SCRIPT_SUFFIXES:
        return ScriptAction(path=ref)

    return CommandAction(command=ref)


class WorkflowStep(BaseModel):
    """A single step in a workflow definition."""

    name: str
    action: Action
    arguments: Optional[str] = None
    required: bool = True
    timeout_seconds: Optional[float] = Field(None, gt=0)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowStep":
        """Build a step from configuration, resolving the action reference once."""
        if "name" not in data or "action" not in data:
            raise ConfigurationError(f"Workflow step needs 'name' and 'action': {data}")
        return cls(
            name=data["name"],
            action=parse_action_ref(data["action"]),
            arguments=data.get("arguments"),
            required=data.get("required", True),
            timeout_seconds=data.get("timeout_seconds"),
        )


class WorkflowDefinition(BaseModel):
    """A statically defined, ordered sequence of steps."""

    name: str
    description: str = ""
    steps: List[WorkflowStep] = Field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        if not data.get("name"):
            raise ConfigurationError("Workflow definition needs a name")
        steps = [WorkflowStep.from_dict(step) for step in data.get("steps", [])]
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Workflow '{data['name']}' has duplicate step names")
        return cls(name=data["name"], description=data.get("description", ""), steps=steps)


class WorkflowStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class StepStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class StepResult(BaseModel):
    """Outcome of one executed step."""

    step_name: str
    status: StepStatus
    duration_ms: float = 0.0
    output: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime


class WorkflowExecution(BaseModel):
    """
    Audit record of one workflow run against a device.

    Steps are appended as they complete; the record is immutable once the
    status leaves Running. While Running, ``owner_id`` names the
    orchestrator that runs it and ``heartbeat_at`` is its lease.
    """

    execution_id: str
    workflow_name: str
    device_id: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    steps: List[StepResult] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "manual"
    owner_id: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    stop_requested_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != WorkflowStatus.RUNNING


class WorkflowTrigger(BaseModel):
    """Start a workflow when a new alert of this type (and title) is created."""

    workflow: str
    alert_type: AlertType
    title_contains: Optional[str] = None
    min_severity: AlertSeverity = AlertSeverity.INFO

    def matches(self, alert_type: AlertType, title: str, severity: AlertSeverity) -> bool:
        if alert_type != self.alert_type:
            return False
        if not severity.at_least(self.min_severity):
            return False
        if self.title_contains and self.title_contains.lower() not in title.lower():
            return False
        return True


class WorkflowSchedule(BaseModel):
    """Run a workflow periodically against a set of devices ("*" = all)."""

    workflow: str
    devices: List[str] = Field(default_factory=lambda: ["*"])
    interval_minutes: int = Field(..., ge=1)
    params: Dict[str, Any] = Field(default_factory=dict)
