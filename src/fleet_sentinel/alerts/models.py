"""
Alert data models.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.models import AlertSeverity, AlertType


class AlertState(str, Enum):
    """Lifecycle state derived from the alert's timestamps."""

    ACTIVE = "Active"
    ACKNOWLEDGED = "Acknowledged"
    RESOLVED = "Resolved"


class NotificationRecord(BaseModel):
    """One notification request made for an alert."""

    tier: int = 0
    channels: List[str] = Field(default_factory=list)
    recipients: List[str] = Field(default_factory=list)
    sent_at: datetime
    delivered: bool = False


class Alert(BaseModel):
    """
    A persisted record of a detected problem on a device.

    At most one unresolved alert exists per (device_id, alert_type, title).
    Once ``resolved_at`` is set it never changes; a recurrence of the same
    problem creates a new alert.
    """

    alert_id: str
    device_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str = ""
    source: str
    created_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    auto_resolve: bool = True
    auto_resolved: bool = False
    notifications_sent: List[NotificationRecord] = Field(default_factory=list)

    # Escalation state, discarded on resolve
    escalation_tier: int = 0
    last_escalated_at: Optional[datetime] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "alert_id": "6f1c2b9e4d0a4f53a1f7c2d6e8b9a0c1",
                "device_id": "ws-0042",
                "alert_type": "Performance",
                "severity": "High",
                "title": "CPU high",
                "message": "CPU usage above 90% for 10 minutes",
                "source": "Health-Monitor",
                "created_at": "2026-01-15T10:30:00+00:00",
                "escalation_tier": 0,
            }
        }
    }

    @property
    def state(self) -> AlertState:
        if self.resolved_at is not None:
            return AlertState.RESOLVED
        if self.acknowledged_at is not None:
            return AlertState.ACKNOWLEDGED
        return AlertState.ACTIVE

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class CorrelationGroup(BaseModel):
    """Several unresolved alerts of one type on one device within a window."""

    device_id: str
    alert_type: AlertType
    count: int
    max_severity: AlertSeverity
    alert_ids: List[str] = Field(default_factory=list)
    first_created_at: datetime
    last_created_at: datetime


class IssueRule(BaseModel):
    """
    Maps issue strings to an alert type and severity.

    A rule matches when any keyword occurs in the issue (case-insensitive).
    """

    keywords: List[str]
    alert_type: AlertType
    severity: AlertSeverity = AlertSeverity.MEDIUM

    def matches(self, issue: str) -> bool:
        lowered = issue.lower()
        return any(keyword.lower() in lowered for keyword in self.keywords)
