"""
Notification data models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.models import AlertSeverity
from ..core.time_util import utcnow


@dataclass
class Notification:
    """
    Notification request handed to the dispatcher.

    Attributes:
        subject: Notification subject/title
        message: Notification body/content
        severity: Alert severity
        channels: Logical channels to deliver to (team, oncall, manager, ...)
        alert_id: Alert this notification is about, if any
        device_id: Device the alert concerns, if any
        tier: Escalation tier that produced the request (0 = creation)
        recipients: Named people to reach (e.g. the current on-call)
        metadata: Additional notification data
        timestamp: When notification was created
    """
    subject: str
    message: str
    severity: AlertSeverity = AlertSeverity.INFO
    channels: List[str] = field(default_factory=list)
    alert_id: Optional[str] = None
    device_id: Optional[str] = None
    tier: int = 0
    recipients: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "subject": self.subject,
            "message": self.message,
            "severity": self.severity.value,
            "channels": self.channels,
            "alert_id": self.alert_id,
            "device_id": self.device_id,
            "tier": self.tier,
            "recipients": self.recipients,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }
