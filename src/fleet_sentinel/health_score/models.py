"""
Health score data models.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.models import DeviceStatus
from ..core.time_util import utcnow


class HealthStatus(str, Enum):
    """Status tier derived from the total score."""

    HEALTHY = "Healthy"
    WARNING = "Warning"
    CRITICAL = "Critical"
    OFFLINE = "Offline"


class ScoreBreakdown(BaseModel):
    """
    One device's assessment snapshot.

    Sub-scores are clamped to [0, 25] by the collector. Produced fresh on
    every assessment cycle and never persisted.
    """

    device_id: str = ""
    availability: int = Field(default=0, ge=0, le=25)
    performance: int = Field(default=0, ge=0, le=25)
    security: int = Field(default=0, ge=0, le=25)
    compliance: int = Field(default=0, ge=0, le=25)
    issues: List[str] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "example": {
                "device_id": "ws-0042",
                "availability": 25,
                "performance": 15,
                "security": 25,
                "compliance": 20,
                "issues": ["CPU high", "Pending updates"],
            }
        }
    }


class HealthScore(BaseModel):
    """
    Calculated health score for one device.
    """

    device_id: str = ""
    total: int = Field(..., ge=0, le=100, description="Sum of the four sub-scores")
    status: HealthStatus
    timestamp: datetime = Field(default_factory=utcnow)
    breakdown: ScoreBreakdown


class AssessmentOutcome(BaseModel):
    """What one device's assessment cycle did."""

    device_id: str
    device_status: DeviceStatus
    score: Optional[HealthScore] = None
    created_alerts: List[str] = Field(default_factory=list)
    resolved_alerts: List[str] = Field(default_factory=list)
    error: Optional[str] = None
