"""Tests for the notification service and reminder rules."""

import json
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx

from shared.db_operations import DatabaseOperations
from shared.emitter import EventEmitter
from shared.errors import NotificationNotFound
from shared.models import NotificationAction
from services.notification_service.notifications import NotificationService, serialize_notification
from services.notification_service.reminders import ReminderService


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def socket():
    socket = MagicMock()
    socket.send_text = AsyncMock()
    return socket


@pytest.fixture
def emitter(socket):
    emitter = EventEmitter()
    emitter.start()
    emitter.register("user_1", socket)
    return emitter


@pytest.fixture
def service(db_ops, emitter, monkeypatch):
    monkeypatch.delenv("ENABLE_NOTIFICATIONS", raising=False)
    monkeypatch.delenv("NOTIFICATION_WEBHOOK_URL", raising=False)
    return NotificationService(db_ops, emitter)


@pytest.fixture
def reminders(db_ops, service):
    return ReminderService(db_ops, service)


def sent(socket):
    return [json.loads(call.args[0]) for call in socket.send_text.await_args_list]


# NotificationService

@pytest.mark.asyncio
async def test_create_persists_and_emits(service, db_ops, socket):
    notification = await service.create(
        user_id="user_1",
        type="info",
        title="Document Uploaded",
        message="lease.pdf was added",
        actions=[NotificationAction(label="View", url="/documents")]
    )

    stored = db_ops.get_notification(notification.id, "user_1")
    assert stored.is_read is False
    assert stored.actions == [{"label": "View", "url": "/documents", "type": "primary"}]

    messages = sent(socket)
    assert len(messages) == 1
    assert messages[0]["event"] == "notification:new"
    assert messages[0]["data"]["id"] == str(notification.id)
    assert messages[0]["data"]["title"] == "Document Uploaded"


@pytest.mark.asyncio
async def test_create_rejects_unknown_type(service, socket):
    with pytest.raises(ValueError):
        await service.create(user_id="user_1", type="urgent", title="x", message="y")

    socket.send_text.assert_not_called()


@pytest.mark.asyncio
async def test_mark_read(service, socket):
    notification = await service.create(user_id="user_1", type="info", title="t", message="m")

    read = await service.mark_read(notification.id, "user_1")

    assert read.is_read is True
    assert sent(socket)[-1] == {"event": "notification:read", "data": str(notification.id)}
    assert service.unread_count("user_1") == 0


@pytest.mark.asyncio
async def test_mark_read_other_users_notification(service, socket):
    notification = await service.create(user_id="user_2", type="info", title="t", message="m")

    with pytest.raises(NotificationNotFound):
        await service.mark_read(notification.id, "user_1")

    socket.send_text.assert_not_called()


@pytest.mark.asyncio
async def test_mark_all_read(service, socket):
    for index in range(3):
        await service.create(user_id="user_1", type="info", title=f"t{index}", message="m")

    count = await service.mark_all_read("user_1")

    assert count == 3
    assert service.unread_count("user_1") == 0
    assert sent(socket)[-1] == {"event": "notification:read", "data": {"all": True, "count": 3}}


@pytest.mark.asyncio
async def test_delete(service, socket):
    notification = await service.create(user_id="user_1", type="info", title="t", message="m")

    await service.delete(notification.id, "user_1")

    assert service.list("user_1") == []
    assert sent(socket)[-1] == {"event": "notification:deleted", "data": str(notification.id)}

    with pytest.raises(NotificationNotFound):
        await service.delete(notification.id, "user_1")


@pytest.mark.asyncio
async def test_list_is_newest_first_and_has_no_side_effects(service, socket):
    first = await service.create(user_id="user_1", type="info", title="first", message="m")
    second = await service.create(user_id="user_1", type="warning", title="second", message="m")
    emitted = socket.send_text.await_count

    listed = service.list("user_1")

    assert [n.id for n in listed] == [second.id, first.id]
    assert [n["title"] for n in map(serialize_notification, listed)] == ["second", "first"]
    assert socket.send_text.await_count == emitted


@pytest.mark.asyncio
async def test_notify_sync_completed(service, db_ops):
    ok = await service.notify_sync_completed("user_1", "drive", 3, True)
    partial = await service.notify_sync_completed("user_1", "calendar", 2, False)

    assert (ok.type, ok.title) == ("success", "Sync Completed")
    assert ok.message == "Successfully synced 3 files from Google Drive."
    assert (partial.type, partial.title) == ("warning", "Sync Completed with Errors")
    assert "events from Google Calendar" in partial.message


@pytest.mark.asyncio
async def test_notify_sync_failed(service):
    notification = await service.notify_sync_failed("user_1", "drive", "Failed to refresh access token")

    assert notification.type == "critical"
    assert notification.title == "Sync Failed"
    assert notification.actions[0]["label"] == "Reconnect"


@pytest.mark.asyncio
async def test_critical_alert_disabled(service):
    service.http_client = MagicMock()
    service.http_client.post = AsyncMock()

    await service.send_critical_error_alert("run_1", "user_1", "boom")

    service.http_client.post.assert_not_called()


@pytest.mark.asyncio
async def test_critical_alert_posts_to_webhook(db_ops, emitter, monkeypatch):
    monkeypatch.setenv("ENABLE_NOTIFICATIONS", "true")
    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/alerts")
    posted = []

    def handler(request):
        posted.append(json.loads(request.content))
        return httpx.Response(200)

    service = NotificationService(db_ops, emitter, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    await service.send_critical_error_alert("run_1", "user_1", "boom", context={"connection_id": "c1"})

    assert posted[0]["run_id"] == "run_1"
    assert posted[0]["error"] == "boom"
    assert "connection_id" in posted[0]["text"]


@pytest.mark.asyncio
async def test_critical_alert_webhook_failure_is_swallowed(db_ops, emitter, monkeypatch):
    monkeypatch.setenv("ENABLE_NOTIFICATIONS", "true")
    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/alerts")

    def handler(request):
        raise httpx.ConnectError("unreachable")

    service = NotificationService(db_ops, emitter, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    await service.send_critical_error_alert("run_1", "user_1", "boom")


# ReminderService

@pytest.mark.asyncio
async def test_upcoming_event_reminder(reminders, db_ops, socket):
    now = datetime(2030, 3, 10, 8, 0)
    hearing = db_ops.create_event("user_1", "Court hearing", datetime(2030, 3, 11, 9, 30), priority="critical")
    db_ops.create_event("user_1", "Meeting", datetime(2030, 3, 11, 15, 0))
    db_ops.create_event("user_1", "Later", datetime(2030, 3, 14, 9, 0))
    db_ops.create_event("user_1", "Done", datetime(2030, 3, 11, 10, 0), status="completed")

    created = await reminders.check_upcoming_events(now)

    assert created == 2
    notifications = {n.event_id: n for n in db_ops.get_notifications("user_1")}
    assert notifications[hearing.id].type == "critical"
    assert notifications[hearing.id].title == "Event Reminder"
    assert "2030-03-11" in notifications[hearing.id].message
    assert [m["event"] for m in sent(socket)].count("event:reminder") == 2


@pytest.mark.asyncio
async def test_event_reminder_is_sent_once_per_day(reminders, db_ops):
    db_ops.create_event("user_1", "Court hearing", datetime.utcnow() + timedelta(days=1))

    assert await reminders.check_upcoming_events() == 1
    assert await reminders.check_upcoming_events() == 0
    assert len(db_ops.get_notifications("user_1")) == 1


@pytest.mark.asyncio
async def test_expiring_document_warning(reminders, db_ops):
    now = datetime.utcnow()
    lease = db_ops.create_document("user_1", "Apartment lease", category="property", end_date=now + timedelta(days=5))
    db_ops.create_document("user_1", "Insurance", category="insurance", end_date=now + timedelta(days=60))

    assert await reminders.check_expiring_documents(now) == 1
    assert await reminders.check_expiring_documents(now) == 0

    notification = db_ops.get_notifications("user_1")[0]
    assert notification.type == "warning"
    assert notification.title == "Document Expiring Soon"
    assert notification.document_id == lease.id
    assert [a["label"] for a in notification.actions] == ["View Document", "Renew"]
    assert 'property document "Apartment lease"' in notification.message


@pytest.mark.asyncio
async def test_run_notification_checks(reminders, db_ops):
    now = datetime.utcnow()
    db_ops.create_document("user_2", "Contract", end_date=now + timedelta(days=2))

    outcome = await reminders.run_notification_checks(now)

    assert outcome == {"expiring_documents": 1, "upcoming_events": 0}
    assert db_ops.find_recent_notification("user_2", now - timedelta(minutes=1)) is not None
