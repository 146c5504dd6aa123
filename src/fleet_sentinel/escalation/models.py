"""
Escalation data models: tiers, business-hours windows and on-call rotation.
"""

from datetime import date, datetime, time
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator


class EscalationTier(BaseModel):
    """
    One level of response an unresolved alert can reach.

    ``timeout_minutes`` is how long an alert waits at this tier before it is
    promoted to the next one. The last tier never times out.
    """

    name: str
    channels: List[str] = Field(default_factory=list)
    timeout_minutes: Optional[int] = Field(None, ge=0)
    notify_on_call: bool = False


class BusinessHours(BaseModel):
    """
    Weekly working-hours window in a given timezone.

    Weekdays use ISO numbering (Monday=1 .. Sunday=7). A window whose start is
    after its end spans midnight.
    """

    weekdays: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    start: time = time(8, 0)
    end: time = time(18, 0)
    timezone: str = "UTC"

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, v: List[int]) -> List[int]:
        if any(day < 1 or day > 7 for day in v):
            raise ValueError("Weekdays must be ISO weekday numbers 1-7")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        ZoneInfo(v)
        return v

    def contains(self, moment: datetime) -> bool:
        """Return whether ``moment`` falls inside this window."""
        local = moment.astimezone(ZoneInfo(self.timezone))
        if self.weekdays and local.isoweekday() not in self.weekdays:
            return False

        now_t = local.time()
        if self.start <= self.end:
            return self.start <= now_t < self.end
        return now_t >= self.start or now_t < self.end


class OnCallRoster(BaseModel):
    """
    Simple rotation: contacts take turns for ``rotation_days`` each,
    starting from ``start_date``.
    """

    rotation: List[str] = Field(default_factory=list)
    rotation_days: int = Field(7, ge=1)
    start_date: date = date(2026, 1, 5)

    def current(self, moment: datetime) -> Optional[str]:
        """Contact on call at ``moment``, or None when the roster is empty."""
        if not self.rotation:
            return None
        elapsed_days = (moment.date() - self.start_date).days
        slot = (elapsed_days // self.rotation_days) % len(self.rotation)
        return self.rotation[slot]


def default_tiers() -> List[EscalationTier]:
    return [
        EscalationTier(name="none", channels=[], timeout_minutes=15),
        EscalationTier(name="team", channels=["team"], timeout_minutes=30),
        EscalationTier(name="on-call", channels=["oncall"], timeout_minutes=60, notify_on_call=True),
        EscalationTier(name="manager", channels=["manager"]),
    ]


def check_tiers(tiers: List[EscalationTier]) -> List[EscalationTier]:
    """Every tier but the last must time out."""
    if not tiers:
        raise ValueError("At least one escalation tier is required")
    for tier in tiers[:-1]:
        if tier.timeout_minutes is None:
            raise ValueError(f"Tier '{tier.name}' needs a timeout_minutes (only the last tier may omit it)")
    return tiers


class EscalationPolicy(BaseModel):
    """Ordered tiers plus the business-hours gating rules."""

    tiers: List[EscalationTier] = Field(default_factory=default_tiers)
    business_hours: Optional[BusinessHours] = Field(default_factory=BusinessHours)
    # Per alert type windows, keyed by AlertType value
    business_hours_overrides: Dict[str, Optional[BusinessHours]] = Field(default_factory=dict)
    on_call: OnCallRoster = Field(default_factory=OnCallRoster)

    @field_validator("tiers")
    @classmethod
    def validate_tiers(cls, v: List[EscalationTier]) -> List[EscalationTier]:
        return check_tiers(v)

    @property
    def final_tier(self) -> int:
        return len(self.tiers) - 1

    def window_for(self, alert_type: str) -> Optional[BusinessHours]:
        """Business-hours window applicable to an alert type (None = always)."""
        if alert_type in self.business_hours_overrides:
            return self.business_hours_overrides[alert_type]
        return self.business_hours


class EscalationResult(BaseModel):
    """Record of a single tier advancement made by a sweep."""

    alert_id: str
    from_tier: int
    to_tier: int
    tier_name: str
    channels: List[str] = Field(default_factory=list)
    recipients: List[str] = Field(default_factory=list)
    escalated_at: datetime
    notified: bool = False
