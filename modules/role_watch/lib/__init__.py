# modules/role_watch/lib/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .config import Settings
from .errors import (
    ConfigError,
    NotificationDispatchError,
    RoleWatchError,
    SourceFetchError,
    StateReadError,
    StateWriteError,
)
from .extractor import extract, scan
from .models import Decision, MarkerState, Role, ScanReport

__all__ = [
    "ConfigError",
    "Decision",
    "MarkerState",
    "NotificationDispatchError",
    "Role",
    "RoleWatchError",
    "ScanReport",
    "Settings",
    "SourceFetchError",
    "StateReadError",
    "StateWriteError",
    "extract",
    "scan",
]
