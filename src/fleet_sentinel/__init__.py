"""
Fleet Sentinel - Fleet monitoring control plane

Turns per-device telemetry into health scores, deduplicated and correlated
alerts, time-based escalations and remediation workflows.

Main modules:
- health_score: Health scoring and the periodic assessment sweep
- alerts: Alert lifecycle (dedup, correlation, ack/resolve, archival)
- escalation: Escalation tiers, business hours and on-call routing
- workflows: Static multi-step remediation workflows
- notifications: Channel routing to notification providers
- inventory: Device status writer and fleet summary
- api / cli: HTTP API and fleetctl operational CLI
"""

__version__ = "0.3.0"
__author__ = "Fleet Sentinel Team"

__all__ = ["__version__", "__author__"]
