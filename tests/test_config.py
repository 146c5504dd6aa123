"""
Tests for configuration loading.
"""

import pytest

from fleet_sentinel.core.config import (
    AppConfig,
    AssessmentConfig,
    get_config,
    load_config,
    reload_config,
)
from fleet_sentinel.core.errors import ConfigurationError


def write_config(tmp_path, text):
    path = tmp_path / "fleet.yml"
    path.write_text(text)
    return path


class TestLoadConfig:
    """Test YAML plus environment configuration."""

    def test_defaults(self):
        config = AppConfig()
        assert config.scoring.healthy_threshold == 90
        assert config.scoring.warning_threshold == 70
        assert config.workflows.dry_run is True
        assert [t.name for t in config.escalation.tiers] == ["none", "team", "on-call", "manager"]

    def test_yaml_sections(self, tmp_path):
        path = write_config(
            tmp_path,
            "log_level: debug\n"
            "storage:\n"
            "  db_path: /tmp/fleet-test.db\n"
            "assessment:\n"
            "  max_parallel: 4\n"
            "escalation:\n"
            "  tiers:\n"
            "    - {name: first, channels: [team], timeout_minutes: 5}\n"
            "    - {name: last, channels: [manager]}\n"
            "  business_hours: null\n"
            "workflows:\n"
            "  triggers:\n"
            "    - {workflow: disk-cleanup, alert_type: Performance, title_contains: disk}\n",
        )
        config = load_config(path)

        assert config.log_level == "DEBUG"
        assert config.storage.db_path == "/tmp/fleet-test.db"
        assert config.assessment.max_parallel == 4
        policy = config.escalation.to_policy()
        assert policy.final_tier == 1
        assert policy.business_hours is None
        assert config.workflows.triggers[0].workflow == "disk-cleanup"

    def test_environment_fills_gaps_and_yaml_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_ASSESSMENT_MAX_PARALLEL", "3")
        monkeypatch.setenv("FLEET_ASSESSMENT_PROBE_TIMEOUT_SECONDS", "12.5")
        path = write_config(tmp_path, "assessment:\n  max_parallel: 8\n")

        config = load_config(path)
        assert config.assessment.max_parallel == 8
        assert config.assessment.probe_timeout_seconds == 12.5
        assert AssessmentConfig().max_parallel == 3

    @pytest.mark.parametrize(
        "text",
        [
            "scoring:\n  healthy_threshold: 60\n  warning_threshold: 70\n",
            "scoring:\n  healthy_threshold: 120\n",
            "escalation:\n  tiers:\n    - {name: a}\n    - {name: b, timeout_minutes: 5}\n",
            "escalation:\n  business_hours: {weekdays: [8]}\n",
            "log_level: chatty\n",
            "storage: [not, a, mapping\n",
        ],
    )
    def test_invalid_config(self, tmp_path, text):
        with pytest.raises(ConfigurationError):
            load_config(write_config(tmp_path, text))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "absent.yml")

    def test_reload_replaces_global_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr("fleet_sentinel.core.config._config", None)
        path = write_config(tmp_path, "log_level: warning\n")

        config = reload_config(path)
        assert config.log_level == "WARNING"
        assert get_config() is config
