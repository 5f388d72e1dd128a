"""Tests for the API Gateway routes and the live event socket."""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from shared.auth import create_access_token, create_state_token
from shared.errors import OAuthError, TokenMissing
from shared.models import SyncResult, TokenSet
from services.api_gateway import main


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path}/gateway.db")
    monkeypatch.setenv("JWT_SECRET", "gateway-test-secret-with-enough-length")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "ab" * 32)
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("GOOGLE_REDIRECT_URI", "http://localhost:8001/api/v1/integrations/google/callback")
    monkeypatch.setenv("ENABLE_AUTO_SYNC", "false")
    monkeypatch.setenv("ENABLE_REMINDER_CHECKS", "false")
    monkeypatch.delenv("ENABLE_NOTIFICATIONS", raising=False)

    with TestClient(main.app) as test_client:
        main.db_ops.create_tables()
        yield test_client


@pytest.fixture
def headers(client):
    return {"Authorization": f"Bearer {create_access_token('user_1')}"}


def make_connection(kind="drive", user_id="user_1", **fields):
    return main.db_ops.create_connection(
        user_id=user_id,
        kind=kind,
        access_token="ya29.access",
        refresh_token="1//refresh",
        token_expiry=datetime.utcnow() + timedelta(hours=1),
        encryption_service=main.encryption_service,
        account_email="user@example.com",
        **fields
    )


# Health

def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_root(client):
    assert client.get("/").json()["status"] == "running"


# Authentication

def test_missing_bearer_token(client):
    response = client.get("/api/v1/notifications")

    assert response.status_code == 401


def test_invalid_bearer_token(client):
    response = client.get("/api/v1/notifications", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


# Google integration

def test_google_auth_url(client, headers):
    response = client.get("/api/v1/integrations/google/auth?kind=calendar", headers=headers)

    assert response.status_code == 200
    auth_url = response.json()["auth_url"]
    assert auth_url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "state=" in auth_url


def test_google_auth_rejects_unknown_kind(client, headers):
    response = client.get("/api/v1/integrations/google/auth?kind=dropbox", headers=headers)

    assert response.status_code == 400


def test_google_callback_creates_connection(client, monkeypatch):
    monkeypatch.setattr(main.oauth_client, "exchange_code", AsyncMock(return_value=TokenSet(
        access_token="ya29.new", refresh_token="1//new", expires_at=datetime.utcnow() + timedelta(hours=1)
    )))
    monkeypatch.setattr(main.oauth_client, "get_user_info", AsyncMock(return_value={"email": "user@example.com"}))
    state = create_state_token("user_1", "drive")

    response = client.get(f"/api/v1/integrations/google/callback?code=auth-code&state={state}")

    assert response.status_code == 200
    connection = response.json()["connection"]
    assert connection["kind"] == "drive"
    assert connection["account_email"] == "user@example.com"
    assert connection["folder_id"] == "root"

    tokens = main.db_ops.get_connection_tokens(connection["id"], main.encryption_service)
    assert tokens["access_token"] == "ya29.new"
    assert tokens["refresh_token"] == "1//new"

    # Re-authorizing the same account updates the existing connection
    response = client.get(f"/api/v1/integrations/google/callback?code=again&state={state}")
    assert response.json()["connection"]["id"] == connection["id"]
    assert len(main.db_ops.get_connections_by_user("user_1")) == 1


def test_google_callback_rejects_bad_state(client):
    response = client.get("/api/v1/integrations/google/callback?code=auth-code&state=forged")

    assert response.status_code == 400


def test_google_callback_reports_denied_consent(client):
    response = client.get("/api/v1/integrations/google/callback?error=access_denied")

    assert response.status_code == 400
    assert "access_denied" in response.json()["detail"]


def test_google_folders(client, headers, monkeypatch):
    connection = make_connection()
    monkeypatch.setattr(main.token_manager, "ensure_valid_access_token", AsyncMock(return_value="ya29.access"))
    monkeypatch.setattr(main.drive_client, "list_folders", AsyncMock(return_value=[
        {"id": "folder_1", "name": "Legal", "parents": ["root"]}
    ]))

    response = client.get(f"/api/v1/integrations/google/folders?connection_id={connection.id}", headers=headers)

    assert response.status_code == 200
    assert response.json() == {"folders": [{"id": "folder_1", "name": "Legal"}]}


def test_google_folders_without_tokens(client, headers, monkeypatch):
    connection = make_connection()
    monkeypatch.setattr(
        main.token_manager, "ensure_valid_access_token", AsyncMock(side_effect=TokenMissing("No tokens stored"))
    )

    response = client.get(f"/api/v1/integrations/google/folders?connection_id={connection.id}", headers=headers)

    assert response.status_code == 502


def test_google_folders_with_revoked_refresh_token(client, headers, monkeypatch):
    connection = main.db_ops.create_connection(
        user_id="user_1",
        kind="drive",
        access_token="ya29.expired",
        refresh_token="1//revoked",
        token_expiry=datetime.utcnow() - timedelta(hours=1),
        encryption_service=main.encryption_service
    )
    monkeypatch.setattr(
        main.oauth_client, "refresh_access_token", AsyncMock(side_effect=OAuthError("invalid_grant", 400))
    )

    response = client.get(f"/api/v1/integrations/google/folders?connection_id={connection.id}", headers=headers)

    assert response.status_code == 502
    assert main.db_ops.get_connection(connection.id).status == "error"


def test_google_connect_sets_folder_scope(client, headers):
    connection = make_connection()

    response = client.post("/api/v1/integrations/google/connect", headers=headers, json={
        "connection_id": str(connection.id),
        "folder_id": "folder_1",
        "folder_name": "Legal",
        "auto_sync": True,
        "sync_frequency": "daily",
    })

    assert response.status_code == 200
    updated = main.db_ops.get_connection(connection.id)
    assert (updated.folder_id, updated.folder_name) == ("folder_1", "Legal")
    assert (updated.auto_sync, updated.sync_frequency) == (True, "daily")


def test_google_connect_rejects_bad_frequency(client, headers):
    connection = make_connection()

    response = client.post("/api/v1/integrations/google/connect", headers=headers, json={
        "connection_id": str(connection.id), "sync_frequency": "weekly"
    })

    assert response.status_code == 400


def test_google_connect_other_users_connection(client, headers):
    connection = make_connection(user_id="user_2")

    response = client.post("/api/v1/integrations/google/connect", headers=headers, json={
        "connection_id": str(connection.id)
    })

    assert response.status_code == 404


def test_google_disconnect(client, headers, monkeypatch):
    connection = make_connection()
    revoke = AsyncMock(return_value=True)
    monkeypatch.setattr(main.oauth_client, "revoke_token", revoke)

    response = client.post("/api/v1/integrations/google/disconnect", headers=headers, json={
        "connection_id": str(connection.id)
    })

    assert response.status_code == 200
    revoke.assert_awaited_once_with("1//refresh")
    assert main.db_ops.get_connection(connection.id).status == "disconnected"


def test_calendar_connect_and_list(client, headers, monkeypatch):
    connection = make_connection(kind="calendar", calendar_id="primary")
    monkeypatch.setattr(main.token_manager, "ensure_valid_access_token", AsyncMock(return_value="ya29.access"))
    monkeypatch.setattr(main.calendar_client, "list_calendars", AsyncMock(return_value=[
        {"id": "primary", "summary": "user@example.com", "timeZone": "Europe/Berlin", "primary": True}
    ]))

    listed = client.get(f"/api/v1/calendar/calendars?connection_id={connection.id}", headers=headers)
    assert listed.json()["calendars"][0]["time_zone"] == "Europe/Berlin"

    response = client.post("/api/v1/calendar/connect", headers=headers, json={
        "connection_id": str(connection.id),
        "calendar_id": "primary",
        "time_zone": "Europe/Berlin",
        "auto_sync": True,
        "sync_frequency": "hourly",
    })

    assert response.status_code == 200
    assert response.json()["connection"]["time_zone"] == "Europe/Berlin"


# Sync

def test_trigger_sync_runs_in_background(client, headers, monkeypatch):
    connection = make_connection()
    calls = []

    async def run_claimed_pass(connection_id, direction):
        calls.append((connection_id, direction))
        main.orchestrator.guard.release(connection_id)
        return SyncResult()

    monkeypatch.setattr(main.orchestrator, "run_claimed_pass", run_claimed_pass)

    response = client.post(f"/api/v1/sync/{connection.id}", headers=headers)

    assert response.status_code == 202
    assert response.json()["direction"] == "pull"
    assert calls == [(connection.id, "pull")]
    assert main.orchestrator.guard.is_running(connection.id) is False


def test_trigger_sync_defaults_calendar_to_bidirectional(client, headers, monkeypatch):
    connection = make_connection(kind="calendar")
    calls = []

    async def run_claimed_pass(connection_id, direction):
        calls.append(direction)
        main.orchestrator.guard.release(connection_id)

    monkeypatch.setattr(main.orchestrator, "run_claimed_pass", run_claimed_pass)

    response = client.post(f"/api/v1/sync/{connection.id}", headers=headers)

    assert response.status_code == 202
    assert calls == ["bidirectional"]


def test_trigger_sync_while_running(client, headers):
    connection = make_connection()
    main.orchestrator.guard.acquire(connection.id)
    try:
        response = client.post(f"/api/v1/sync/{connection.id}", headers=headers)
    finally:
        main.orchestrator.guard.release(connection.id)

    assert response.status_code == 409


def test_trigger_sync_rejects_push_for_drive(client, headers):
    connection = make_connection()

    response = client.post(f"/api/v1/sync/{connection.id}?direction=push", headers=headers)

    assert response.status_code == 400


def test_trigger_sync_invalid_connection_id(client, headers):
    assert client.post("/api/v1/sync/not-a-uuid", headers=headers).status_code == 400
    assert client.post(f"/api/v1/sync/{uuid4()}", headers=headers).status_code == 404


def test_sync_single_file(client, headers, monkeypatch):
    connection = make_connection()
    sync_single_file = AsyncMock(return_value={"success": True, "document_id": "d1"})
    monkeypatch.setattr(main.orchestrator, "sync_single_file", sync_single_file)

    response = client.post(f"/api/v1/sync/{connection.id}/files/f1", headers=headers)

    assert response.json() == {"success": True, "document_id": "d1"}
    sync_single_file.assert_awaited_once_with(connection.id, "f1")


def test_sync_status(client, headers):
    connection = make_connection()
    main.db_ops.upsert_mirror_record(connection.id, "f1", remote_name="a.pdf", sync_status="completed")
    main.db_ops.record_mirror_failure(connection.id, "f2", "File type not supported", remote_name="b.exe")

    response = client.get(f"/api/v1/sync/{connection.id}/status", headers=headers)

    body = response.json()
    assert body["in_progress"] is False
    assert body["items_by_status"] == {"pending": 0, "completed": 1, "failed": 1}
    assert body["recent_errors"][0]["name"] == "b.exe"
    assert body["recent_errors"][0]["retry_count"] == 1


def test_sync_result(client, headers):
    connection = make_connection()
    assert client.get(f"/api/v1/sync/{connection.id}/result", headers=headers).status_code == 404

    run_id = uuid4()
    main.db_ops.create_sync_run(run_id, connection.id, "user_1")
    main.db_ops.add_sync_log(run_id, "INFO", "Starting pull sync")
    main.db_ops.update_sync_run(run_id, status="completed", processed=3, succeeded=2, failed=1)

    response = client.get(f"/api/v1/sync/{connection.id}/result", headers=headers)

    body = response.json()
    assert body["run_id"] == str(run_id)
    assert (body["processed"], body["succeeded"], body["failed"]) == (3, 2, 1)
    assert body["logs"][0]["message"] == "Starting pull sync"


# Events

def test_update_event_pushes_to_linked_calendars(client, headers, monkeypatch):
    event = main.db_ops.create_event("user_1", "Hearing", datetime(2030, 10, 1, 9, 0))
    push_event_update = AsyncMock(return_value=1)
    monkeypatch.setattr(main.orchestrator, "push_event_update", push_event_update)

    response = client.put(f"/api/v1/events/{event.id}", headers=headers, json={
        "title": "Hearing (moved)",
        "event_date": "2030-10-02T11:00:00+02:00",
        "priority": "critical",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["remote_updates"] == 1
    assert body["event"]["title"] == "Hearing (moved)"
    assert body["event"]["event_date"] == "2030-10-02T09:00:00"
    push_event_update.assert_awaited_once_with(event.id)

    stored = main.db_ops.get_event(event.id)
    assert (stored.title, stored.priority, stored.description) == ("Hearing (moved)", "critical", "")


def test_update_event_validation(client, headers, monkeypatch):
    event = main.db_ops.create_event("user_1", "Hearing", datetime(2030, 10, 1, 9, 0))
    other = main.db_ops.create_event("user_2", "Other", datetime(2030, 10, 1, 9, 0))
    push_event_update = AsyncMock(return_value=0)
    monkeypatch.setattr(main.orchestrator, "push_event_update", push_event_update)

    assert client.put(f"/api/v1/events/{event.id}", headers=headers, json={"priority": "urgent"}).status_code == 400
    assert client.put(f"/api/v1/events/{event.id}", headers=headers, json={"status": "done"}).status_code == 400
    assert client.put(f"/api/v1/events/{other.id}", headers=headers, json={"title": "x"}).status_code == 404
    assert client.put("/api/v1/events/not-a-uuid", headers=headers, json={"title": "x"}).status_code == 400
    push_event_update.assert_not_called()


def test_delete_event_removes_remote_copies(client, headers, monkeypatch):
    connection = make_connection(kind="calendar", calendar_id="primary")
    event = main.db_ops.create_event("user_1", "Hearing", datetime(2030, 10, 1, 9, 0))
    main.db_ops.upsert_mirror_record(connection.id, f"local:{event.id}", event_id=event.id, sync_status="failed")
    push_event_deletion = AsyncMock(return_value=1)
    monkeypatch.setattr(main.orchestrator, "push_event_deletion", push_event_deletion)

    response = client.delete(f"/api/v1/events/{event.id}", headers=headers)

    assert response.json() == {"success": True, "remote_deletions": 1}
    push_event_deletion.assert_awaited_once_with(event.id)
    assert main.db_ops.get_event(event.id) is None
    assert main.db_ops.get_mirror_record(connection.id, f"local:{event.id}").event_id is None
    assert client.delete(f"/api/v1/events/{event.id}", headers=headers).status_code == 404


# Notifications

def test_notification_routes(client, headers):
    first = main.db_ops.create_notification("user_1", "info", "First", "m")
    second = main.db_ops.create_notification("user_1", "warning", "Second", "m")
    main.db_ops.create_notification("user_2", "info", "Other", "m")

    listed = client.get("/api/v1/notifications", headers=headers).json()
    assert [n["id"] for n in listed["notifications"]] == [str(second.id), str(first.id)]
    assert listed["unread_count"] == 2

    response = client.put(f"/api/v1/notifications/{first.id}/read", headers=headers)
    assert response.json()["notification"]["is_read"] is True
    assert client.get("/api/v1/notifications/count", headers=headers).json() == {"count": 1}

    assert client.post("/api/v1/notifications/read-all", headers=headers).json() == {"success": True, "count": 1}

    assert client.delete(f"/api/v1/notifications/{second.id}", headers=headers).status_code == 200
    assert client.delete(f"/api/v1/notifications/{second.id}", headers=headers).status_code == 404


def test_notification_list_limit_validation(client, headers):
    assert client.get("/api/v1/notifications?limit=0", headers=headers).status_code == 400


def test_notifications_of_other_users_are_not_found(client, headers):
    other = main.db_ops.create_notification("user_2", "info", "Other", "m")

    assert client.put(f"/api/v1/notifications/{other.id}/read", headers=headers).status_code == 404


# Live events

def test_websocket_rejects_invalid_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws?token=bad") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 1008


def test_websocket_client_messages(client):
    main.db_ops.create_notification("user_1", "info", "First", "m")
    main.db_ops.create_notification("user_1", "info", "Second", "m")
    token = create_access_token("user_1")

    with client.websocket_connect(f"/ws?token={token}") as websocket:
        websocket.send_json({"event": "notification:mark-all-read"})
        assert websocket.receive_json() == {"event": "notification:read", "data": {"all": True, "count": 2}}

        websocket.send_json({"event": "notification:delete", "data": {"id": str(uuid4())}})
        error = websocket.receive_json()
        assert error["event"] == "error"
        assert "not found" in error["data"]["message"]

    assert main.db_ops.count_unread_notifications("user_1") == 0
    assert main.emitter.subscriber_count("user_1") == 0


def test_websocket_accepts_bearer_header(client):
    token = create_access_token("user_1")

    with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {token}"}) as websocket:
        websocket.send_json({"event": "notification:mark-all-read"})
        assert websocket.receive_json()["data"]["count"] == 0
