"""
Shared infrastructure for the payments core.

This package provides:
- Environment settings and the typed admin-controls snapshot
- The error taxonomy shared by every service
- An in-memory datastore with single-row atomic and conditional writes
- Audit logging, realtime change notification and admin controls
"""

from .config import ControlKey, Settings, SystemSettings, get_settings
from .errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PaymentsError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from .storage import InMemoryStorage

__all__ = [
    "ControlKey",
    "Settings",
    "SystemSettings",
    "get_settings",
    "PaymentsError",
    "ValidationError",
    "NotFoundError",
    "UnauthorizedError",
    "InvalidStateTransitionError",
    "StoreError",
    "InMemoryStorage",
]
