"""Periodic reminder rules: upcoming events and expiring documents."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from shared.db_operations import DatabaseOperations
from shared.emitter import EVENT_REMINDER
from shared.models import NotificationAction
from services.notification_service.notifications import NotificationService

logger = logging.getLogger(__name__)

EXPIRY_WINDOW_DAYS = 7
DEDUP_WINDOW = timedelta(hours=24)


class ReminderService:
    """Turns upcoming deadlines into notifications, at most once a day per object."""

    def __init__(self, db_ops: DatabaseOperations, notification_service: NotificationService):
        self.db_ops = db_ops
        self.notification_service = notification_service

    async def check_upcoming_events(self, now: Optional[datetime] = None) -> int:
        """
        Remind users about events scheduled tomorrow.

        Returns:
            Number of reminders created
        """
        now = now or datetime.utcnow()
        tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow_end = tomorrow + timedelta(days=1) - timedelta(microseconds=1)

        created = 0
        for event in self.db_ops.get_events_between(tomorrow, tomorrow_end, status="upcoming"):
            if self.db_ops.find_recent_notification(event.user_id, now - DEDUP_WINDOW, event_id=event.id):
                continue

            await self.notification_service.create(
                user_id=event.user_id,
                type="critical" if event.priority == "critical" else "warning",
                title="Event Reminder",
                message=f'"{event.title}" is scheduled for tomorrow ({event.event_date:%Y-%m-%d}).',
                event_id=event.id,
                actions=[NotificationAction(label="View Event", url=f"/calendar?eventId={event.id}")]
            )
            await self.notification_service.emitter.emit(event.user_id, EVENT_REMINDER, {
                "id": str(event.id),
                "title": event.title,
                "event_date": event.event_date.isoformat(),
            })
            created += 1

        logger.info(f"Created {created} event reminders")
        return created

    async def check_expiring_documents(self, now: Optional[datetime] = None) -> int:
        """
        Warn users about documents ending within the next week.

        Returns:
            Number of warnings created
        """
        now = now or datetime.utcnow()

        created = 0
        for document in self.db_ops.get_expiring_documents(now, within_days=EXPIRY_WINDOW_DAYS):
            if self.db_ops.find_recent_notification(
                document.user_id, now - DEDUP_WINDOW, type="warning", document_id=document.id
            ):
                continue

            await self.notification_service.create(
                user_id=document.user_id,
                type="warning",
                title="Document Expiring Soon",
                message=(
                    f'Your {document.category} document "{document.title}" will expire on '
                    f"{document.end_date:%Y-%m-%d}."
                ),
                document_id=document.id,
                actions=[
                    NotificationAction(label="View Document", url=f"/documents/{document.id}"),
                    NotificationAction(label="Renew", url=f"/documents/{document.id}/renew", type="secondary"),
                ]
            )
            created += 1

        logger.info(f"Created {created} expiring document warnings")
        return created

    async def run_notification_checks(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every reminder rule once."""
        logger.info("Running notification checks")
        return {
            "expiring_documents": await self.check_expiring_documents(now),
            "upcoming_events": await self.check_upcoming_events(now),
        }
