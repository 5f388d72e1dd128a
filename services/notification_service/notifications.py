"""User notifications and operator alerts."""

import logging
from typing import Dict, List, Optional, Sequence, Union

import httpx

from shared.config import get_bool_env, get_env
from shared.db_models import Notification
from shared.db_operations import DatabaseOperations, IdLike
from shared.emitter import (
    EventEmitter, NOTIFICATION_DELETED, NOTIFICATION_NEW, NOTIFICATION_READ
)
from shared.errors import NotificationNotFound
from shared.models import NOTIFICATION_TYPES, NotificationAction

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {
    "drive": "Google Drive",
    "calendar": "Google Calendar",
}

INTEGRATION_PAGES = {
    "drive": "/integrations/google-drive",
    "calendar": "/integrations/google-calendar",
}


def serialize_notification(notification: Notification) -> Dict:
    """Convert a Notification row into its wire representation."""
    return {
        "id": str(notification.id),
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "document_id": str(notification.document_id) if notification.document_id else None,
        "event_id": str(notification.event_id) if notification.event_id else None,
        "task_id": notification.task_id,
        "actions": notification.actions or [],
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def _action_dicts(actions: Optional[Sequence[Union[NotificationAction, Dict]]]) -> Optional[List[Dict]]:
    if not actions:
        return None
    result = []
    for action in actions:
        if isinstance(action, NotificationAction):
            result.append({"label": action.label, "url": action.url, "type": action.type})
        else:
            result.append(dict(action))
    return result


class NotificationService:
    """
    Per-user notification list.

    Every successful mutation is mirrored onto the user's live channel;
    reads have no side effects.
    """

    def __init__(
        self,
        db_ops: DatabaseOperations,
        emitter: EventEmitter,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize notification service.

        Args:
            db_ops: Database operations instance
            emitter: Live event channel
            http_client: HTTP client for the operator webhook (created on demand)
        """
        self.db_ops = db_ops
        self.emitter = emitter
        self.http_client = http_client
        self.notification_enabled = get_bool_env("ENABLE_NOTIFICATIONS", False)
        self.notification_webhook = get_env("NOTIFICATION_WEBHOOK_URL")

    async def create(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        document_id: Optional[IdLike] = None,
        event_id: Optional[IdLike] = None,
        task_id: Optional[str] = None,
        actions: Optional[Sequence[Union[NotificationAction, Dict]]] = None
    ) -> Notification:
        """
        Create a notification and push it to the user's live channel.

        Raises:
            ValueError: If the type is not one of critical, warning, info, success
        """
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Invalid notification type: {type}")

        notification = self.db_ops.create_notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            document_id=document_id,
            event_id=event_id,
            task_id=task_id,
            actions=_action_dicts(actions)
        )
        await self.emitter.emit(user_id, NOTIFICATION_NEW, serialize_notification(notification))
        return notification

    async def mark_read(self, notification_id: IdLike, user_id: str) -> Notification:
        """
        Mark one notification read.

        Raises:
            NotificationNotFound: If the notification does not belong to the user
        """
        notification = self.db_ops.mark_notification_read(notification_id, user_id)
        if not notification:
            raise NotificationNotFound(f"Notification {notification_id} not found")

        await self.emitter.emit(user_id, NOTIFICATION_READ, str(notification.id))
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification read; returns how many changed."""
        count = self.db_ops.mark_all_notifications_read(user_id)
        await self.emitter.emit(user_id, NOTIFICATION_READ, {"all": True, "count": count})
        return count

    async def delete(self, notification_id: IdLike, user_id: str):
        """
        Delete a notification.

        Raises:
            NotificationNotFound: If the notification does not belong to the user
        """
        if not self.db_ops.delete_notification(notification_id, user_id):
            raise NotificationNotFound(f"Notification {notification_id} not found")

        await self.emitter.emit(user_id, NOTIFICATION_DELETED, str(notification_id))

    def list(self, user_id: str, limit: int = 50, unread_only: bool = False) -> List[Notification]:
        """Newest first."""
        return self.db_ops.get_notifications(user_id, limit=limit, unread_only=unread_only)

    def unread_count(self, user_id: str) -> int:
        return self.db_ops.count_unread_notifications(user_id)

    async def notify_sync_completed(
        self,
        user_id: str,
        connection_kind: str,
        processed: int,
        success: bool
    ) -> Notification:
        """Summarize a finished pass for the user."""
        provider = PROVIDER_LABELS.get(connection_kind, connection_kind)
        noun = "files" if connection_kind == "drive" else "events"
        if success:
            title = "Sync Completed"
            message = f"Successfully synced {processed} {noun} from {provider}."
        else:
            title = "Sync Completed with Errors"
            message = f"Synced {processed} {noun} from {provider} with some errors."

        return await self.create(
            user_id=user_id,
            type="success" if success else "warning",
            title=title,
            message=message,
            actions=[NotificationAction(
                label="View Details",
                url=INTEGRATION_PAGES.get(connection_kind, "/integrations")
            )]
        )

    async def notify_sync_failed(self, user_id: str, connection_kind: str, error_message: str) -> Notification:
        """Tell the user a pass aborted and the connection needs attention."""
        provider = PROVIDER_LABELS.get(connection_kind, connection_kind)
        return await self.create(
            user_id=user_id,
            type="critical",
            title="Sync Failed",
            message=f"Syncing with {provider} failed: {error_message}",
            actions=[NotificationAction(
                label="Reconnect",
                url=INTEGRATION_PAGES.get(connection_kind, "/integrations")
            )]
        )

    async def send_critical_error_alert(
        self,
        run_id: str,
        user_id: str,
        error_message: str,
        context: Optional[dict] = None
    ):
        """
        Forward a pass-fatal error to the operator webhook.

        Does nothing unless ENABLE_NOTIFICATIONS is true. Delivery failures
        are logged and never raised.

        Args:
            run_id: The sync run ID
            user_id: The user ID
            error_message: The error message
            context: Optional additional context
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, skipping alert for run {run_id}")
            return

        alert_message = (
            f"Critical Error in Sync Run\n"
            f"Run ID: {run_id}\n"
            f"User ID: {user_id}\n"
            f"Error: {error_message}\n"
        )
        if context:
            alert_message += f"Context: {context}\n"

        logger.warning(f"CRITICAL ERROR NOTIFICATION: {alert_message}")

        if not self.notification_webhook:
            return

        payload = {
            "text": alert_message,
            "run_id": run_id,
            "user_id": user_id,
            "error": error_message
        }
        try:
            if self.http_client is not None:
                await self.http_client.post(self.notification_webhook, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient() as client:
                    await client.post(self.notification_webhook, json=payload, timeout=10.0)
            logger.info(f"Alert sent for run {run_id}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send alert: {e}")
