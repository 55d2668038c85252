"""Exception taxonomy for snapsync.

Absence is never an exception: lookups return None. The classes below cover
the conditions that callers must be able to tell apart.
"""

from __future__ import annotations


class SnapSyncError(Exception):
    """Base exception for snapsync."""


class ConfigurationError(SnapSyncError):
    """Missing identity or contradictory flags. Raised at construction."""


class StoreUnavailableError(SnapSyncError):
    """The local store could not be opened, even after one re-open."""


class RecordNotFoundError(SnapSyncError):
    """A record that must exist (update by key) was not found."""

    def __init__(self, key: str) -> None:
        super().__init__(f"record not found: {key}")
        self.key = key


class ValidationError(SnapSyncError):
    """A payload or record failed validation; nothing was written."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class RemoteError(SnapSyncError):
    """Base class for remote object store failures."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class AccessDeniedError(RemoteError):
    """The remote store refused access. Fatal, never retried."""


class TransientRemoteError(RemoteError):
    """Any other remote failure. The next sync cycle retries implicitly."""
