"""
Notification formatters - convert alerts to human-readable notifications.
"""

from typing import List, Optional

from ..alerts.models import Alert
from .models import Notification


def alert_to_notification(
    alert: Alert,
    channels: List[str],
    tier: int = 0,
    tier_name: Optional[str] = None,
    recipients: Optional[List[str]] = None,
) -> Notification:
    """
    Build a notification for an alert.

    Args:
        alert: Alert to notify about
        channels: Channels to deliver to
        tier: Escalation tier (0 for the creation notice)
        tier_name: Human-readable tier name for escalations
        recipients: Named recipients, e.g. the current on-call contact

    Returns:
        Notification instance
    """
    if tier > 0:
        subject = f"[ESCALATED: {tier_name or tier}] {alert.title} on {alert.device_id}"
    else:
        subject = f"{alert.title} on {alert.device_id}"

    message_parts = [alert.message or alert.title]
    message_parts.append("")
    message_parts.append(f"Device: {alert.device_id}")
    message_parts.append(f"Type: {alert.alert_type.value} | Severity: {alert.severity.value}")
    message_parts.append(f"Source: {alert.source}")
    message_parts.append(f"Raised: {alert.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    if recipients:
        message_parts.append(f"On call: {', '.join(recipients)}")
    message_parts.append(f"Alert ID: {alert.alert_id}")

    return Notification(
        subject=subject,
        message="\n".join(message_parts),
        severity=alert.severity,
        channels=list(channels),
        alert_id=alert.alert_id,
        device_id=alert.device_id,
        tier=tier,
        recipients=list(recipients or []),
        metadata={"alert_type": alert.alert_type.value, "source": alert.source},
    )
