"""
Configuration management for Fleet Sentinel.

Uses Pydantic Settings for environment variable validation and type safety.
Every component receives its own section explicitly; nothing reads the
global instance except entry points.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..alerts.models import IssueRule
from ..escalation.models import (
    BusinessHours,
    EscalationPolicy,
    EscalationTier,
    OnCallRoster,
    check_tiers,
    default_tiers,
)
from ..workflows.models import WorkflowSchedule, WorkflowTrigger
from .errors import ConfigurationError
from .models import AlertSeverity

logger = logging.getLogger(__name__)


class StorageConfig(BaseSettings):
    """Relational store configuration."""

    db_path: str = Field(
        default="/var/lib/fleet-sentinel/fleet.db",
        description="Path to the SQLite database file"
    )

    model_config = SettingsConfigDict(env_prefix="FLEET_STORAGE_")


class ScoringConfig(BaseSettings):
    """Health status tier thresholds."""

    healthy_threshold: int = Field(
        default=90,
        ge=0,
        le=100,
        description="Minimum total score for Healthy"
    )
    warning_threshold: int = Field(
        default=70,
        ge=0,
        le=100,
        description="Minimum total score for Warning (below is Critical)"
    )

    @model_validator(mode="after")
    def validate_order(self) -> "ScoringConfig":
        if self.warning_threshold >= self.healthy_threshold:
            raise ValueError("warning_threshold must be lower than healthy_threshold")
        return self

    model_config = SettingsConfigDict(env_prefix="FLEET_SCORING_")


class AssessmentConfig(BaseSettings):
    """Health-assessment sweep configuration."""

    interval_seconds: int = Field(default=300, ge=1, description="Sweep interval")
    max_parallel: int = Field(default=10, ge=1, description="Devices probed concurrently")
    probe_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-device probe timeout")
    source: str = Field(default="Health-Monitor", description="Source tag on assessment alerts")
    agent_url: str = Field(default="http://localhost:8080", description="Endpoint agent gateway URL")
    agent_token: str = Field(default="", description="Bearer token for the agent gateway")

    model_config = SettingsConfigDict(env_prefix="FLEET_ASSESSMENT_")


class AlertConfig(BaseSettings):
    """Alert lifecycle configuration."""

    archive_days: int = Field(default=30, ge=1, description="Delete resolved alerts older than this")
    archive_interval_hours: int = Field(default=24, ge=1, description="Archival sweep interval")
    correlation_window_minutes: int = Field(default=15, ge=1, description="Default correlation window")
    notify_min_severity: AlertSeverity = Field(
        default=AlertSeverity.HIGH,
        description="Notify on creation for alerts at or above this severity"
    )
    initial_channels: List[str] = Field(default_factory=lambda: ["team"])
    issue_rules: Optional[List[IssueRule]] = Field(
        default=None,
        description="Issue classification rules (None = built-in rules)"
    )

    model_config = SettingsConfigDict(env_prefix="FLEET_ALERTS_")


class EscalationConfig(BaseSettings):
    """Escalation sweep configuration."""

    enabled: bool = True
    interval_seconds: int = Field(default=300, ge=1, description="Sweep interval")
    tiers: List[EscalationTier] = Field(default_factory=default_tiers)
    business_hours: Optional[BusinessHours] = Field(default_factory=BusinessHours)
    business_hours_overrides: Dict[str, Optional[BusinessHours]] = Field(default_factory=dict)
    on_call: OnCallRoster = Field(default_factory=OnCallRoster)

    @field_validator("tiers")
    @classmethod
    def validate_tiers(cls, v: List[EscalationTier]) -> List[EscalationTier]:
        return check_tiers(v)

    model_config = SettingsConfigDict(env_prefix="FLEET_ESCALATION_")

    def to_policy(self) -> EscalationPolicy:
        return EscalationPolicy(
            tiers=self.tiers,
            business_hours=self.business_hours,
            business_hours_overrides=self.business_hours_overrides,
            on_call=self.on_call,
        )


class WorkflowConfig(BaseSettings):
    """Workflow orchestrator configuration."""

    definitions_path: str = Field(
        default="/etc/fleet-sentinel/workflows.yml",
        description="YAML file with workflow definitions"
    )
    default_step_timeout_seconds: float = Field(default=300.0, gt=0)
    default_deadline_seconds: Optional[float] = Field(default=None, gt=0)
    lease_seconds: float = Field(
        default=60.0,
        gt=0,
        description="A Running execution with no heartbeat for this long is considered abandoned"
    )
    dry_run: bool = Field(default=True, description="Simulate remote actions")
    alert_on_failure: bool = True
    agent_url: str = Field(default="http://localhost:8080", description="Endpoint agent gateway URL")
    agent_token: str = ""
    triggers: List[WorkflowTrigger] = Field(default_factory=list)
    schedules: List[WorkflowSchedule] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="FLEET_WORKFLOWS_")


class NotificationConfig(BaseSettings):
    """Notification providers and channel routing."""

    timeout_seconds: float = Field(default=10.0, gt=0)

    webhook_url: str = ""
    webhook_token: str = ""

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_use_tls: bool = True
    email_from: str = ""
    email_to: str = ""

    telegram_bot_token: str = ""
    telegram_chat_ids: List[str] = Field(default_factory=list)

    # Channel name -> provider names
    routes: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            "team": ["webhook", "log"],
            "oncall": ["telegram", "log"],
            "manager": ["email", "log"],
        }
    )

    model_config = SettingsConfigDict(env_prefix="FLEET_NOTIFY_")


class AppConfig(BaseSettings):
    """Main application configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Nested configurations
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    assessment: AssessmentConfig = Field(default_factory=AssessmentConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    workflows: WorkflowConfig = Field(default_factory=WorkflowConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


_SECTIONS = {
    "storage": StorageConfig,
    "scoring": ScoringConfig,
    "assessment": AssessmentConfig,
    "alerts": AlertConfig,
    "escalation": EscalationConfig,
    "workflows": WorkflowConfig,
    "notifications": NotificationConfig,
}


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Build configuration from an optional YAML file plus environment.

    Values present in the YAML file take precedence over environment
    variables; anything the file omits falls back to env, then defaults.

    Raises:
        ConfigurationError: if the file cannot be parsed or fails validation
    """
    data: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    try:
        sections = {
            name: cls(**(data.get(name) or {}))
            for name, cls in _SECTIONS.items()
        }
        top_level = {k: v for k, v in data.items() if k not in _SECTIONS}
        config = AppConfig(**top_level, **sections)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")

    logger.debug(f"Loaded configuration (file={path})")
    return config


# Global config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the global configuration instance.

    Lazily loads configuration on first access, from the file named by
    FLEET_CONFIG_FILE when set.

    Returns:
        AppConfig: The global configuration instance
    """
    global _config
    if _config is None:
        _config = load_config(os.getenv("FLEET_CONFIG_FILE") or None)
    return _config


def reload_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Reload configuration from file and environment variables.

    Useful for testing or when environment changes.

    Returns:
        AppConfig: The reloaded configuration instance
    """
    global _config
    _config = load_config(path)
    return _config
