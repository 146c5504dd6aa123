"""
Workflow definition registry.

Definitions are static: loaded once from YAML (plus a few built-ins) and
validated at load time, including resolution of every step's action.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from ..core.errors import ConfigurationError
from .models import WorkflowDefinition

logger = logging.getLogger(__name__)


def default_definitions() -> List[WorkflowDefinition]:
    """Built-in remediation workflows."""
    return [
        WorkflowDefinition.from_dict({
            "name": "restart-service",
            "description": "Restart a Windows/Linux service and verify device health",
            "steps": [
                {"name": "restart", "action": "service:{{service}}"},
                {"name": "verify", "action": "builtin:health_check"},
                {"name": "clear-alerts", "action": "builtin:resolve_alerts",
                 "arguments": "{{service}}", "required": False},
            ],
        }),
        WorkflowDefinition.from_dict({
            "name": "disk-cleanup",
            "description": "Clear temporary files and re-check disk health",
            "steps": [
                {"name": "clear-temp", "action": "scripts/clear-temp.ps1"},
                {"name": "verify", "action": "builtin:health_check"},
                {"name": "clear-alerts", "action": "builtin:resolve_alerts",
                 "arguments": "disk", "required": False},
            ],
        }),
        WorkflowDefinition.from_dict({
            "name": "health-recheck",
            "description": "Re-assess a device and tell the team",
            "steps": [
                {"name": "check", "action": "builtin:health_check"},
                {"name": "notify", "action": "builtin:notify",
                 "arguments": "{{device_id}} passed its health re-check", "required": False},
            ],
        }),
    ]


class WorkflowRegistry:
    """
    Holds the static set of workflow definitions by name.
    """

    def __init__(self, definitions: Optional[List[WorkflowDefinition]] = None):
        """
        Initialize the registry.

        Args:
            definitions: Definitions to register. If None, starts with the built-ins.
        """
        self.definitions: Dict[str, WorkflowDefinition] = {}
        for definition in (definitions if definitions is not None else default_definitions()):
            self.add(definition)

    def add(self, definition: WorkflowDefinition) -> None:
        if definition.name in self.definitions:
            logger.info(f"Replacing workflow definition: {definition.name}")
        self.definitions[definition.name] = definition

    def load_from_file(self, filepath: Union[str, Path]) -> int:
        """
        Load workflow definitions from a YAML file.

        Args:
            filepath: Path to workflow configuration file

        Returns:
            Number of definitions loaded

        Example YAML format:
            workflows:
              - name: restart-spooler
                description: Restart the print spooler
                steps:
                  - name: restart
                    action: service:Spooler
                  - name: verify
                    action: builtin:health_check
                  - name: tell-team
                    action: {kind: notify, channels: [team]}
                    arguments: "Spooler restarted on {{device_id}}"
                    required: false
        """
        filepath = Path(filepath)
        if not filepath.exists():
            logger.warning(f"Workflow file not found: {filepath}, using built-in definitions only")
            return 0

        try:
            with open(filepath, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {filepath}: {e}")

        if not data or "workflows" not in data:
            logger.warning(f"No workflows found in {filepath}")
            return 0

        loaded = 0
        for wf_data in data["workflows"]:
            try:
                definition = WorkflowDefinition.from_dict(wf_data)
            except (ConfigurationError, ValueError) as e:
                logger.error(f"Failed to load workflow {wf_data.get('name', 'unknown')}: {e}")
                continue
            self.add(definition)
            loaded += 1
            logger.info(f"Loaded workflow: {definition.name} ({len(definition.steps)} steps)")

        logger.info(f"Loaded {loaded} workflows from {filepath}")
        return loaded

    def get(self, name: str) -> WorkflowDefinition:
        """
        Look up a definition by name.

        Raises:
            ConfigurationError: if no workflow has this name
        """
        definition = self.definitions.get(name)
        if definition is None:
            raise ConfigurationError(f"Unknown workflow: {name}", workflow=name)
        return definition

    def list_definitions(self) -> List[WorkflowDefinition]:
        return sorted(self.definitions.values(), key=lambda d: d.name)
