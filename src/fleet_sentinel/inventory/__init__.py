"""
Device inventory module.

Device records, the device-status writer and the fleet summary.
"""

__all__ = ["store"]
