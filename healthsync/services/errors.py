"""Exceptions raised by the sync engine.

Conflicts are not errors: they are returned in ``PushResponse.conflicts``.
"""


class SyncError(Exception):
    """Base class for sync failures that abort a cycle."""
    pass


class SyncNetworkError(SyncError):
    """Transport failure or unusable server response. Retried on the next tick."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class SyncAuthError(SyncError):
    """Stored token was rejected. The user has to log in again."""
    pass


class LoginFailedError(Exception):
    """Raised when exchanging credentials for a token fails."""

    REASONS = ("invalid_credentials", "account_locked", "network_error")

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class StorageCorruptionError(Exception):
    """A stored outbox entry could not be decoded."""

    def __init__(self, sequence_id: int, message: str):
        super().__init__(f"Outbox entry {sequence_id}: {message}")
        self.sequence_id = sequence_id
