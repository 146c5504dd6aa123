"""
HTTP API for the Fleet Sentinel control plane.
"""

__all__ = ["app"]
