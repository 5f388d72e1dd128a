"""Shared data models for the legal companion sync workflow."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


# Connection.status values
CONNECTION_CONNECTED = "connected"
CONNECTION_SYNCING = "syncing"
CONNECTION_ERROR = "error"
CONNECTION_DISCONNECTED = "disconnected"

# MirrorRecord.sync_status values
MIRROR_COMPLETED = "completed"
MIRROR_FAILED = "failed"
MIRROR_PENDING = "pending"

CONNECTION_KINDS = ("drive", "calendar")
NOTIFICATION_TYPES = ("critical", "warning", "info", "success")
SYNC_FREQUENCIES = ("manual", "hourly", "daily")
EVENT_PRIORITIES = ("critical", "high", "medium", "low")
EVENT_STATUSES = ("upcoming", "completed", "missed", "dismissed")


@dataclass
class TokenSet:
    """Tokens returned by the OAuth token endpoint."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    token_type: str = "Bearer"
    scope: str = ""


@dataclass
class RemoteItem:
    """One item listed from a remote provider (a Drive file or a calendar event)."""
    remote_id: str
    name: str
    content_type: str
    size: Optional[int]
    created_at: Optional[datetime]
    modified_at: Optional[datetime]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ListingPage:
    """A page of remote items plus the cursor for the next page."""
    items: List[RemoteItem]
    next_cursor: Optional[str] = None


@dataclass
class SyncProgress:
    """Progress of a pass, reported after every item."""
    connection_id: str
    index: int
    total: int
    item_name: str
    succeeded: int
    failed: int


@dataclass
class SyncItemError:
    """An item-local failure recorded during a pass."""
    remote_id: str
    name: str
    error: str


@dataclass
class SyncResult:
    """Outcome of one sync pass."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[SyncItemError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def merge(self, other: "SyncResult") -> "SyncResult":
        """Combine two pass results (used by bidirectional passes)."""
        return SyncResult(
            processed=self.processed + other.processed,
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "success": self.success,
            "errors": [
                {"remote_id": e.remote_id, "name": e.name, "error": e.error}
                for e in self.errors
            ],
        }


@dataclass
class NotificationAction:
    """A call-to-action attached to a notification."""
    label: str
    url: str
    type: str = "primary"  # primary, secondary
