"""
Core data models shared across Fleet Sentinel components.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .time_util import utcnow


class DeviceStatus(str, Enum):
    """Live status of a managed device."""

    ONLINE = "Online"
    OFFLINE = "Offline"
    WARNING = "Warning"
    CRITICAL = "Critical"
    UNKNOWN = "Unknown"


class AlertType(str, Enum):
    """Categories of alerts."""

    PERFORMANCE = "Performance"
    SECURITY = "Security"
    AVAILABILITY = "Availability"
    HEALTH = "Health"
    COMPLIANCE = "Compliance"
    UPDATE = "Update"
    CUSTOM = "Custom"


class AlertSeverity(str, Enum):
    """Alert severity levels, most severe first."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]

    def at_least(self, other: "AlertSeverity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.LOW: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


class Device(BaseModel):
    """
    A managed endpoint in the fleet.

    Owned by the fleet inventory; this control plane only writes its status
    and last-seen time.
    """

    device_id: str = Field(..., description="Unique device identifier")
    hostname: Optional[str] = Field(None, description="Hostname if known")
    status: DeviceStatus = Field(DeviceStatus.UNKNOWN, description="Current status")
    last_seen: Optional[datetime] = Field(None, description="Last successful assessment")
    health_score: Optional[int] = Field(None, ge=0, le=100, description="Last health score")
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {
        "json_schema_extra": {
            "example": {
                "device_id": "ws-0042",
                "hostname": "accounting-ws-42",
                "status": "Online",
                "last_seen": "2026-01-15T12:00:00+00:00",
                "health_score": 92,
            }
        }
    }
