"""
Real-time synchronization core for the clinic dashboard.

One duplex connection carries live dashboard channels, session presence,
comments and notifications. ``SyncClient`` wires them together.
"""

from .client import SyncClient

__version__ = "1.0.0"

__all__ = ["SyncClient"]
