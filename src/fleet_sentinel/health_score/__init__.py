"""
Device health score module.

Aggregates per-device sub-scores into a 0-100 total and a status tier, and
runs the periodic assessment sweep that feeds the alert lifecycle.
"""

__all__ = ["models", "calculator", "sources", "service"]
