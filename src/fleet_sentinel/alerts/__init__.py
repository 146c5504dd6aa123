"""
Alert lifecycle module.

Deduplicated alert creation, correlation, acknowledgment, resolution,
auto-clear reconciliation and archival.
"""

__all__ = ["models", "store", "manager", "classifier"]
