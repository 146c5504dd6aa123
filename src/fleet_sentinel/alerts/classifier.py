"""
Issue classification: decide the alert type and severity for an issue string
reported by the metric source.
"""

import logging
from typing import List, Optional, Tuple

from ..core.models import AlertSeverity, AlertType
from .models import IssueRule

logger = logging.getLogger(__name__)


def default_rules() -> List[IssueRule]:
    """Built-in rules, checked in order."""
    return [
        IssueRule(keywords=["unreachable", "offline", "not responding"],
                  alert_type=AlertType.AVAILABILITY, severity=AlertSeverity.CRITICAL),
        IssueRule(keywords=["antivirus", "defender", "firewall", "malware", "encryption", "bitlocker"],
                  alert_type=AlertType.SECURITY, severity=AlertSeverity.HIGH),
        IssueRule(keywords=["disk space", "disk full", "low disk"],
                  alert_type=AlertType.PERFORMANCE, severity=AlertSeverity.HIGH),
        IssueRule(keywords=["cpu", "memory", "ram", "disk", "latency"],
                  alert_type=AlertType.PERFORMANCE, severity=AlertSeverity.MEDIUM),
        IssueRule(keywords=["update", "patch", "reboot pending"],
                  alert_type=AlertType.UPDATE, severity=AlertSeverity.LOW),
        IssueRule(keywords=["policy", "compliance", "password", "uac"],
                  alert_type=AlertType.COMPLIANCE, severity=AlertSeverity.MEDIUM),
    ]


class IssueClassifier:
    """
    Classifies issue strings using ordered keyword rules.

    Issues matching no rule become Health alerts with the default severity.
    """

    def __init__(
        self,
        rules: Optional[List[IssueRule]] = None,
        default_type: AlertType = AlertType.HEALTH,
        default_severity: AlertSeverity = AlertSeverity.MEDIUM,
    ):
        self.rules = rules if rules is not None else default_rules()
        self.default_type = default_type
        self.default_severity = default_severity

    def classify(self, issue: str) -> Tuple[AlertType, AlertSeverity]:
        for rule in self.rules:
            if rule.matches(issue):
                return rule.alert_type, rule.severity

        logger.debug(f"No classification rule matched issue '{issue}', using defaults")
        return self.default_type, self.default_severity
