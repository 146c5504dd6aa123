"""Fleet Sentinel exception definitions.

Every error carries a stable ``code`` that the API and CLI expose instead of
raw exception text.
"""

from typing import Any, Dict, Optional


class FleetError(Exception):
    """Base exception for the Fleet Sentinel control plane"""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error payload returned by the API and CLI."""
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(FleetError):
    """Alert, execution or device id could not be resolved"""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}", kind=kind, id=identifier)
        self.kind = kind
        self.identifier = identifier


class DependencyTimeoutError(FleetError):
    """External probe, action or notification exceeded its deadline"""

    code = "DEPENDENCY_TIMEOUT"

    def __init__(self, message: str, timeout: Optional[float] = None, **details: Any):
        super().__init__(message, timeout=timeout, **details)
        self.timeout = timeout


class DependencyUnavailableError(FleetError):
    """External collaborator is unreachable"""

    code = "DEPENDENCY_UNAVAILABLE"


class ConfigurationError(FleetError):
    """Configuration is invalid (e.g. unknown workflow name)"""

    code = "CONFIGURATION_ERROR"


class ActionFailedError(FleetError):
    """A workflow action ran but reported failure"""

    code = "ACTION_FAILED"
