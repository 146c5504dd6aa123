"""
Workflow orchestration module.

Runs statically defined, ordered remediation workflows against a device and
keeps an audit record of every execution.
"""

__all__ = ["models", "definitions", "actions", "store", "orchestrator"]
