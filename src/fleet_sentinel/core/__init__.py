"""
Core module for Fleet Sentinel.

Contains shared models, configuration, errors and time helpers used across
all components.
"""

__all__ = ["config", "errors", "models", "time_util"]
