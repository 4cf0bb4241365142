"""Exception hierarchy for the sync engine."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class NetworkError(SyncError):
    """Network connectivity issues."""
    pass


class SyncTimeoutError(NetworkError):
    """A transport call did not complete within the configured timeout."""
    pass


class AuthenticationError(SyncError):
    """The server rejected or did not receive the bearer token."""
    pass


class ServerError(SyncError):
    """The sync endpoint answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(SyncError):
    """The sync endpoint answered with a body we cannot interpret."""
    pass


class StorageError(SyncError):
    """Reading or writing durable local storage failed."""
    pass
