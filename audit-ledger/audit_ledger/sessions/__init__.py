"""
Session Tracking
================
Authenticated session lifecycle: creation at login, throttled activity
updates, termination and the idle sweep.
"""

from .models import SessionInfo
from .store import SessionStore
from .device import extract_device_info, location_info
from .throttle import InMemoryActivityThrottle, RedisActivityThrottle
from .sweeper import IdleSessionSweeper

__all__ = [
    # Models
    "SessionInfo",
    # Store
    "SessionStore",
    # Context
    "extract_device_info",
    "location_info",
    # Throttles
    "InMemoryActivityThrottle",
    "RedisActivityThrottle",
    # Worker
    "IdleSessionSweeper",
]
