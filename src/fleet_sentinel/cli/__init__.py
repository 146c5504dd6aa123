"""
Command-line interface (fleetctl).
"""

__all__ = ["fleetctl"]
