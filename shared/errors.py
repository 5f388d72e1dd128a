"""Exception types for the sync and notification workflow.

Pass-fatal errors abort the remaining items of a sync pass and propagate to the
caller. Item-local errors are caught inside the pass loop and recorded on the
item's mirror record.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync workflow errors."""


# Pass-fatal

class ConnectionNotFound(SyncError):
    """No connection exists for the given identifier."""

    def __init__(self, connection_id):
        super().__init__(f"Connection {connection_id} not found")
        self.connection_id = connection_id


class TokenMissing(SyncError):
    """The connection has no stored access or refresh token."""


class RefreshFailed(SyncError):
    """The provider rejected the refresh token; re-authorization is required."""


class RemoteListingFailed(SyncError):
    """The provider failed to list remote items."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SyncAlreadyRunning(SyncError):
    """Another pass is already in flight for this connection."""

    def __init__(self, connection_id):
        super().__init__(f"Sync already in progress for connection {connection_id}")
        self.connection_id = connection_id


# Item-local

class ItemValidationFailed(SyncError):
    """A remote item failed domain validation."""


class ItemTransferFailed(SyncError):
    """Fetching or transforming a remote item failed."""


class ItemPersistenceFailed(SyncError):
    """Storing a remote item locally failed."""


# Best-effort delivery

class EmitterUnavailable(SyncError):
    """A live event could not be delivered. Logged, never propagated."""


# Provider / surface errors

class OAuthError(Exception):
    """The OAuth provider returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotificationNotFound(Exception):
    """No notification with this id belongs to the user."""
