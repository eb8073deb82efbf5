from __future__ import annotations


class RoleWatchError(Exception):
    """Base exception for role_watch failures."""


class ConfigError(RoleWatchError, ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings."""


class SourceFetchError(RoleWatchError):
    """The document source answered with a non-success status (or not at all)."""

    def __init__(self, url: str, status: int | None, reason: str) -> None:
        self.url = url
        self.status = status
        self.reason = reason
        if status is None:
            super().__init__(f"Failed to fetch {url}: {reason}")
        else:
            super().__init__(f"Failed to fetch {url}: {status} {reason}")


class StateReadError(RoleWatchError):
    """The marker state could not be read; callers fall back to first-run behavior."""


class StateWriteError(RoleWatchError):
    """The marker state could not be written after a notification went out."""


class RowParseError(RoleWatchError):
    """One table row could not be parsed; the row is skipped."""


class NotificationDispatchError(RoleWatchError):
    """The notification could not be delivered. Fatal to the run."""
