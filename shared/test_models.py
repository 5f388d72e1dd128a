"""Unit tests for shared data models."""

from dataclasses import asdict
from datetime import datetime

from shared.models import (
    ListingPage,
    NotificationAction,
    RemoteItem,
    SyncItemError,
    SyncProgress,
    SyncResult,
)


class TestSyncResult:
    """Tests for SyncResult dataclass."""

    def test_defaults(self):
        """Test that an empty result counts as a success."""
        result = SyncResult()

        assert result.processed == 0
        assert result.errors == []
        assert result.success is True

    def test_success_requires_no_failures(self):
        """Test that a single failed item makes the pass unsuccessful."""
        result = SyncResult(
            processed=3,
            succeeded=2,
            failed=1,
            errors=[SyncItemError(remote_id="f2", name="b.exe", error="unsupported")]
        )

        assert result.success is False

    def test_merge(self):
        """Test combining push and pull results."""
        push = SyncResult(processed=1, succeeded=1)
        pull = SyncResult(
            processed=2,
            succeeded=1,
            failed=1,
            errors=[SyncItemError(remote_id="e1", name="Hearing", error="missing start")]
        )

        merged = push.merge(pull)

        assert merged.processed == 3
        assert merged.succeeded == 2
        assert merged.failed == 1
        assert [e.remote_id for e in merged.errors] == ["e1"]
        # operands untouched
        assert push.errors == []

    def test_to_dict(self):
        """Test serializing a result for API responses."""
        result = SyncResult(
            processed=1,
            failed=1,
            errors=[SyncItemError(remote_id="f1", name="a.exe", error="File type not supported")]
        )

        assert result.to_dict() == {
            "processed": 1,
            "succeeded": 0,
            "failed": 1,
            "success": False,
            "errors": [{"remote_id": "f1", "name": "a.exe", "error": "File type not supported"}],
        }


class TestRemoteItem:
    """Tests for RemoteItem and ListingPage."""

    def test_create_remote_item(self):
        """Test creating a RemoteItem with the raw resource attached."""
        modified = datetime(2024, 1, 15, 10, 30)
        item = RemoteItem(
            remote_id="file123",
            name="contract.pdf",
            content_type="application/pdf",
            size=2048,
            created_at=None,
            modified_at=modified,
            raw={"id": "file123"}
        )

        assert item.remote_id == "file123"
        assert item.modified_at == modified
        assert item.raw["id"] == "file123"

    def test_listing_page_defaults_to_last_page(self):
        """Test that a page without a cursor is the last one."""
        page = ListingPage(items=[])

        assert page.next_cursor is None


class TestNotificationAction:
    """Tests for NotificationAction dataclass."""

    def test_serialization(self):
        """Test serializing an action for the notifications table."""
        action = NotificationAction(label="Renew", url="/documents/1/renew", type="secondary")

        assert asdict(action) == {"label": "Renew", "url": "/documents/1/renew", "type": "secondary"}

    def test_default_type(self):
        """Test that actions default to primary."""
        assert NotificationAction(label="View", url="/documents").type == "primary"


def test_sync_progress_fields():
    """Test that progress carries position and running counters."""
    progress = SyncProgress(
        connection_id="c1", index=2, total=3, item_name="b.exe", succeeded=1, failed=1
    )

    assert asdict(progress)["index"] == 2
    assert progress.total == 3
