"""
Tests for the fleetctl CLI.
"""

import json

import pytest

from fleet_sentinel.alerts.manager import AlertManager
from fleet_sentinel.alerts.store import AlertStore
from fleet_sentinel.cli.fleetctl import create_parser, main, parse_params
from fleet_sentinel.core.errors import ConfigurationError
from fleet_sentinel.core.models import AlertSeverity, AlertType


@pytest.fixture
def config_file(tmp_path):
    db_path = tmp_path / "cli.db"
    workflows = tmp_path / "workflows.yml"
    workflows.write_text(
        "workflows:\n"
        "  - name: echo\n"
        "    steps:\n"
        "      - name: say\n"
        "        action: echo {{word}}\n"
    )
    path = tmp_path / "fleet.yml"
    path.write_text(
        f"storage:\n  db_path: {db_path}\n"
        f"workflows:\n  definitions_path: {workflows}\n"
    )
    return path, str(db_path)


def run(capsys, config, *argv):
    code = main(["--config", str(config), *argv])
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestFleetctl:
    """Test CLI commands and exit codes."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "fleetctl" in capsys.readouterr().out

    def test_version(self, capsys):
        assert main(["version"]) == 0
        assert "fleetctl" in capsys.readouterr().out

    def test_alert_get_and_ack(self, capsys, config_file):
        config, db_path = config_file
        alert_id = AlertManager(AlertStore(db_path)).create(
            "d1", AlertType.SECURITY, AlertSeverity.HIGH, "Firewall disabled"
        )

        code, out, _ = run(capsys, config, "alerts", "get", alert_id)
        assert code == 0
        assert json.loads(out)["title"] == "Firewall disabled"

        code, out, _ = run(capsys, config, "alerts", "ack", alert_id, "--by", "carol")
        assert code == 0
        assert json.loads(out)["state"] == "Acknowledged"

        code, out, _ = run(capsys, config, "alerts", "list", "--device", "d1")
        assert [a["alert_id"] for a in json.loads(out)] == [alert_id]

    def test_missing_alert_exit_code(self, capsys, config_file):
        config, _ = config_file
        code, _, err = run(capsys, config, "alerts", "get", "missing")
        assert code == 3
        assert '"NOT_FOUND"' in err

    def test_workflow_start_status_history(self, capsys, config_file):
        config, _ = config_file
        code, out, _ = run(capsys, config, "workflows", "start", "echo", "d1", "--param", "word=hi")
        assert code == 0
        execution = json.loads(out)
        assert execution["status"] == "Completed"
        assert execution["triggered_by"] == "cli"
        assert "echo hi" in execution["steps"][0]["output"]

        code, out, _ = run(capsys, config, "workflows", "status", execution["execution_id"])
        assert json.loads(out)["status"] == "Completed"

        code, out, _ = run(capsys, config, "workflows", "stop", execution["execution_id"], "--by", "dave")
        assert code == 0
        assert json.loads(out)["status"] == "Completed"

        code, out, _ = run(capsys, config, "workflows", "history", "--device", "d1")
        assert [e["execution_id"] for e in json.loads(out)] == [execution["execution_id"]]

    def test_unknown_workflow_exit_code(self, capsys, config_file):
        config, _ = config_file
        code, _, err = run(capsys, config, "workflows", "start", "nope", "d1")
        assert code == 2
        assert "CONFIGURATION_ERROR" in err

    def test_missing_config_file(self, capsys, tmp_path):
        code, _, _ = run(capsys, tmp_path / "absent.yml", "alerts", "list")
        assert code == 2

    def test_parse_params(self):
        assert parse_params(["service=Spooler", "note=a=b"]) == {"service": "Spooler", "note": "a=b"}
        with pytest.raises(ConfigurationError):
            parse_params(["oops"])

    def test_parser_requires_workflow_arguments(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["workflows", "start", "echo"])
