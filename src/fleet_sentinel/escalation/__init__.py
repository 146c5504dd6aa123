"""
Escalation module.

Promotes unresolved, unacknowledged alerts through ordered response tiers.
"""

__all__ = ["models", "scheduler"]
