"""API Gateway - FastAPI application."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import (
    BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, WebSocket,
    WebSocketDisconnect, status
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import httpx

from shared.auth import (
    create_state_token, extract_bearer_token, verify_access_token, verify_state_token
)
from shared.config import get_aws_config, get_int_env, get_sync_config
from shared.db_models import Connection, Event
from shared.db_operations import DatabaseOperations
from shared.document_storage import DocumentStorage
from shared.emitter import EVENT_DELETED, EVENT_UPDATED, EventEmitter
from shared.encryption import EncryptionService
from shared.errors import (
    ConnectionNotFound, NotificationNotFound, OAuthError, SyncAlreadyRunning, SyncError
)
from shared.models import CONNECTION_KINDS, EVENT_PRIORITIES, EVENT_STATUSES, SYNC_FREQUENCIES
from shared.oauth import GoogleOAuthClient
from shared.token_manager import TokenManager
from services.notification_service.notifications import NotificationService, serialize_notification
from services.notification_service.reminders import ReminderService
from services.sync_service.calendar_client import CalendarClient
from services.sync_service.drive_client import DriveClient
from services.sync_service.listing import RemoteListingClient
from services.sync_service.orchestrator import SyncOrchestrator
from services.sync_service.pass_guard import PassGuard
from services.sync_service.scheduler import run_due_passes, run_periodically

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
encryption_service: Optional[EncryptionService] = None
http_client: Optional[httpx.AsyncClient] = None
oauth_client: Optional[GoogleOAuthClient] = None
token_manager: Optional[TokenManager] = None
drive_client: Optional[DriveClient] = None
calendar_client: Optional[CalendarClient] = None
emitter: Optional[EventEmitter] = None
notification_service: Optional[NotificationService] = None
reminder_service: Optional[ReminderService] = None
orchestrator: Optional[SyncOrchestrator] = None
periodic_tasks: List[asyncio.Task] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, encryption_service, http_client, oauth_client, token_manager
    global drive_client, calendar_client, emitter, notification_service, reminder_service, orchestrator

    logger.info("API Gateway starting up...")
    sync_config = get_sync_config()

    db_ops = DatabaseOperations()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService()
    logger.info("Encryption service initialized")

    http_client = httpx.AsyncClient(timeout=float(sync_config["http_timeout_seconds"]))
    oauth_client = GoogleOAuthClient(http_client=http_client, timeout=sync_config["http_timeout_seconds"])
    token_manager = TokenManager(db_ops, encryption_service, oauth_client)
    drive_client = DriveClient(http_client=http_client, timeout=sync_config["http_timeout_seconds"])
    calendar_client = CalendarClient(http_client=http_client, timeout=sync_config["http_timeout_seconds"])
    logger.info(f"Google clients initialized (OAuth configured: {oauth_client.is_configured()})")

    aws_config = get_aws_config()
    document_storage = DocumentStorage(
        bucket_name=aws_config["s3_bucket"],
        region=aws_config["region"],
        access_key_id=aws_config["access_key_id"],
        secret_access_key=aws_config["secret_access_key"]
    )

    emitter = EventEmitter()
    emitter.start()

    notification_service = NotificationService(db_ops, emitter, http_client=http_client)
    reminder_service = ReminderService(db_ops, notification_service)
    orchestrator = SyncOrchestrator(
        db_ops=db_ops,
        token_manager=token_manager,
        listing_client=RemoteListingClient(drive_client, calendar_client),
        drive_client=drive_client,
        calendar_client=calendar_client,
        document_storage=document_storage,
        emitter=emitter,
        notification_service=notification_service,
        guard=PassGuard(lease_seconds=sync_config["pass_lease_seconds"]),
        page_size=sync_config["page_size"],
        modified_tolerance_seconds=sync_config["modified_tolerance_seconds"]
    )

    if sync_config["auto_sync_enabled"]:
        periodic_tasks.append(asyncio.create_task(run_periodically(
            sync_config["auto_sync_interval_seconds"],
            lambda: run_due_passes(orchestrator, db_ops),
            "auto_sync"
        )))
    if sync_config["reminder_checks_enabled"]:
        periodic_tasks.append(asyncio.create_task(run_periodically(
            sync_config["reminder_interval_seconds"],
            reminder_service.run_notification_checks,
            "reminder_checks"
        )))

    yield

    # Cleanup
    for task in periodic_tasks:
        task.cancel()
    await asyncio.gather(*periodic_tasks, return_exceptions=True)
    periodic_tasks.clear()
    emitter.shutdown()
    await http_client.aclose()
    logger.info("API Gateway shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Legal Companion Sync API",
    description="Google Drive/Calendar sync, notifications and live events",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """
    Global error handling middleware.

    Error codes:
    - 400: Bad Request (validation errors, invalid input)
    - 500: Internal Server Error (unexpected errors)
    """
    try:
        response = await call_next(request)
        return response
    except HTTPException:
        raise
    except ValueError as exc:
        logger.warning(f"Validation error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Bad Request",
                "detail": str(exc),
                "type": "validation_error"
            }
        )
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "detail": "An unexpected error occurred. Please try again later.",
                "type": "internal_error"
            }
        )


@app.exception_handler(SyncAlreadyRunning)
async def sync_already_running_handler(request: Request, exc: SyncAlreadyRunning):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": "Sync already in progress"})


@app.exception_handler(ConnectionNotFound)
async def connection_not_found_handler(request: Request, exc: ConnectionNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(NotificationNotFound)
async def notification_not_found_handler(request: Request, exc: NotificationNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    logger.warning(f"OAuth error: {exc}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    # TokenMissing, RefreshFailed, RemoteListingFailed raised from provider calls
    logger.warning(f"Sync error: {exc}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Resolve the bearer credential to a user id.

    Raises:
        HTTPException: 401 if the credential is missing or invalid
    """
    user_id = verify_access_token(extract_bearer_token(authorization))
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return user_id


def parse_uuid(value: str, name: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {name} format: '{value}'. Must be a valid UUID."
        )


def load_connection(connection_id: str, user_id: str, kind: Optional[str] = None) -> Connection:
    """Fetch a connection owned by the user (404 otherwise)."""
    connection = db_ops.get_connection_for_user(parse_uuid(connection_id, "connection_id"), user_id)
    if not connection or (kind and connection.kind != kind):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return connection


def serialize_connection(connection: Connection) -> dict:
    return {
        "id": str(connection.id),
        "kind": connection.kind,
        "account_email": connection.account_email,
        "status": connection.status,
        "folder_id": connection.folder_id,
        "folder_name": connection.folder_name,
        "include_subfolders": connection.include_subfolders,
        "calendar_id": connection.calendar_id,
        "calendar_name": connection.calendar_name,
        "time_zone": connection.time_zone,
        "auto_sync": connection.auto_sync,
        "sync_frequency": connection.sync_frequency,
        "total_items": connection.total_items or 0,
        "synced_items": connection.synced_items or 0,
        "failed_items": connection.failed_items or 0,
        "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "next_sync_at": connection.next_sync_at.isoformat() if connection.next_sync_at else None,
    }


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "api_gateway",
        "version": "0.1.0"
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Legal Companion Sync API",
        "version": "0.1.0",
        "status": "running"
    }


# Google integration

class FolderConnectRequest(BaseModel):
    """Request model for choosing the Drive folder to sync."""
    connection_id: str = Field(..., description="Drive connection ID")
    folder_id: str = Field(default="root", description="Drive folder ID")
    folder_name: Optional[str] = Field(None, description="Display name of the folder")
    include_subfolders: bool = Field(default=True)
    auto_sync: bool = Field(default=False)
    sync_frequency: str = Field(default="manual", description="manual, hourly or daily")


class CalendarConnectRequest(BaseModel):
    """Request model for choosing the calendar to sync."""
    connection_id: str = Field(..., description="Calendar connection ID")
    calendar_id: str = Field(default="primary")
    calendar_name: Optional[str] = None
    time_zone: str = Field(default="UTC")
    auto_sync: bool = Field(default=False)
    sync_frequency: str = Field(default="manual", description="manual, hourly or daily")


class DisconnectRequest(BaseModel):
    """Request model for disconnecting a connection."""
    connection_id: str


def _check_frequency(sync_frequency: str):
    if sync_frequency not in SYNC_FREQUENCIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid sync_frequency: {sync_frequency}. Must be one of {', '.join(SYNC_FREQUENCIES)}."
        )


@app.get("/api/v1/integrations/google/auth")
async def google_auth(kind: str = "drive", user_id: str = Depends(get_current_user)):
    """Return the Google consent URL for a new Drive or Calendar connection."""
    if kind not in CONNECTION_KINDS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid kind: {kind}")
    if not oauth_client.is_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google OAuth is not configured"
        )
    return {"auth_url": oauth_client.get_authorization_url(create_state_token(user_id, kind))}


@app.get("/api/v1/integrations/google/callback")
async def google_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    """
    Complete the OAuth round trip.

    Exchanges the code for tokens, looks up the Google account and creates the
    connection, or refreshes the tokens of the user's existing connection for
    the same account and kind.
    """
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Authorization denied: {error}")
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing authorization code")

    claims = verify_state_token(state)
    if not claims:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired state")

    user_id, kind = claims["user_id"], claims["kind"]
    tokens = await oauth_client.exchange_code(code)
    user_info = await oauth_client.get_user_info(tokens.access_token)
    account_email = user_info.get("email")

    existing = db_ops.find_connection(user_id, kind, account_email)
    if existing:
        db_ops.store_connection_tokens(
            existing.id,
            access_token=tokens.access_token,
            token_expiry=tokens.expires_at,
            encryption_service=encryption_service,
            refresh_token=tokens.refresh_token
        )
        connection = db_ops.update_connection(existing.id, status="connected")
        logger.info(f"Re-authorized {kind} connection {connection.id} for user {user_id}")
    else:
        connection = db_ops.create_connection(
            user_id=user_id,
            kind=kind,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expiry=tokens.expires_at,
            encryption_service=encryption_service,
            account_email=account_email,
            calendar_id="primary" if kind == "calendar" else None
        )
        logger.info(f"Created {kind} connection {connection.id} for user {user_id}")

    return {"success": True, "connection": serialize_connection(connection)}


@app.get("/api/v1/integrations/google/folders")
async def google_folders(
    connection_id: str,
    parent_id: Optional[str] = None,
    user_id: str = Depends(get_current_user)
):
    """List Drive folders available to a Drive connection."""
    connection = load_connection(connection_id, user_id, kind="drive")
    access_token = await token_manager.ensure_valid_access_token(connection.id)
    folders = await drive_client.list_folders(access_token, parent_id)
    return {"folders": [{"id": f["id"], "name": f.get("name", "")} for f in folders]}


@app.post("/api/v1/integrations/google/connect")
async def google_connect(request: FolderConnectRequest, user_id: str = Depends(get_current_user)):
    """Set the Drive folder and cadence of a Drive connection."""
    _check_frequency(request.sync_frequency)
    connection = load_connection(request.connection_id, user_id, kind="drive")
    connection = db_ops.update_connection(
        connection.id,
        folder_id=request.folder_id,
        folder_name=request.folder_name,
        include_subfolders=request.include_subfolders,
        auto_sync=request.auto_sync,
        sync_frequency=request.sync_frequency,
        next_sync_at=None
    )
    return {"success": True, "connection": serialize_connection(connection)}


@app.post("/api/v1/integrations/google/disconnect")
async def google_disconnect(request: DisconnectRequest, user_id: str = Depends(get_current_user)):
    """Revoke the connection's tokens at Google and disable it locally."""
    connection = load_connection(request.connection_id, user_id)
    tokens = db_ops.get_connection_tokens(connection.id, encryption_service)
    revoke_with = tokens["refresh_token"] or tokens["access_token"] if tokens else None
    if revoke_with:
        await oauth_client.revoke_token(revoke_with)

    db_ops.disconnect_connection(connection.id)
    logger.info(f"Disconnected {connection.kind} connection {connection.id}")
    return {"success": True}


@app.get("/api/v1/calendar/calendars")
async def calendar_list(connection_id: str, user_id: str = Depends(get_current_user)):
    """List the calendars a Calendar connection can sync with."""
    connection = load_connection(connection_id, user_id, kind="calendar")
    access_token = await token_manager.ensure_valid_access_token(connection.id)
    calendars = await calendar_client.list_calendars(access_token)
    return {"calendars": [
        {
            "id": c["id"],
            "summary": c.get("summary", ""),
            "time_zone": c.get("timeZone"),
            "primary": c.get("primary", False),
        }
        for c in calendars
    ]}


@app.post("/api/v1/calendar/connect")
async def calendar_connect(request: CalendarConnectRequest, user_id: str = Depends(get_current_user)):
    """Set the calendar, time zone and cadence of a Calendar connection."""
    _check_frequency(request.sync_frequency)
    connection = load_connection(request.connection_id, user_id, kind="calendar")
    connection = db_ops.update_connection(
        connection.id,
        calendar_id=request.calendar_id,
        calendar_name=request.calendar_name,
        time_zone=request.time_zone,
        auto_sync=request.auto_sync,
        sync_frequency=request.sync_frequency,
        next_sync_at=None
    )
    return {"success": True, "connection": serialize_connection(connection)}


# Sync

async def run_pass_in_background(connection_id: UUID, direction: str):
    """Background task body; pass-fatal errors are already recorded on the connection."""
    try:
        await orchestrator.run_claimed_pass(connection_id, direction)
    except Exception as e:
        logger.error(f"Background {direction} pass for connection {connection_id} failed: {e}")


@app.post("/api/v1/sync/{connection_id}", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    connection_id: str,
    background_tasks: BackgroundTasks,
    direction: Optional[str] = None,
    user_id: str = Depends(get_current_user)
):
    """
    Start a sync pass in the background.

    Drive connections default to a pull pass, calendar connections to a
    bidirectional one. Returns 409 while another pass is running.
    """
    connection = load_connection(connection_id, user_id)
    if connection.status == "disconnected":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Connection is disconnected")

    direction = direction or ("bidirectional" if connection.kind == "calendar" else "pull")
    if direction not in ("pull", "push", "bidirectional") or (connection.kind == "drive" and direction != "pull"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid direction: {direction}")

    orchestrator.guard.acquire(connection.id)
    background_tasks.add_task(run_pass_in_background, connection.id, direction)
    logger.info(f"Queued {direction} pass for connection {connection.id}")

    return {"status": "started", "connection_id": str(connection.id), "direction": direction}


@app.post("/api/v1/sync/{connection_id}/files/{remote_file_id}")
async def sync_file(connection_id: str, remote_file_id: str, user_id: str = Depends(get_current_user)):
    """Sync a single Drive file now."""
    connection = load_connection(connection_id, user_id, kind="drive")
    return await orchestrator.sync_single_file(connection.id, remote_file_id)


@app.get("/api/v1/sync/{connection_id}/status")
async def sync_status(connection_id: str, user_id: str = Depends(get_current_user)):
    """Current connection status, counters and the latest item errors."""
    connection = load_connection(connection_id, user_id)
    recent_errors = db_ops.get_recent_mirror_failures(connection.id, limit=5)

    return {
        "connection": serialize_connection(connection),
        "in_progress": orchestrator.guard.is_running(connection.id),
        "items_by_status": db_ops.count_mirror_records_by_status(connection.id),
        "recent_errors": [
            {
                "remote_item_id": record.remote_item_id,
                "name": record.remote_name,
                "error": record.error_message,
                "retry_count": record.retry_count,
                "updated_at": record.updated_at.isoformat() if record.updated_at else None,
            }
            for record in recent_errors
        ],
    }


@app.get("/api/v1/sync/{connection_id}/result")
async def sync_result(connection_id: str, user_id: str = Depends(get_current_user)):
    """Outcome and log of the most recent pass."""
    connection = load_connection(connection_id, user_id)
    sync_run = db_ops.get_latest_sync_run(connection.id)
    if not sync_run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sync has run for this connection")

    logs = db_ops.get_sync_logs(sync_run.run_id)
    return {
        "run_id": str(sync_run.run_id),
        "direction": sync_run.direction,
        "status": sync_run.status,
        "processed": sync_run.processed or 0,
        "succeeded": sync_run.succeeded or 0,
        "failed": sync_run.failed or 0,
        "error_message": sync_run.error_message,
        "created_at": sync_run.created_at.isoformat() if sync_run.created_at else None,
        "completed_at": sync_run.completed_at.isoformat() if sync_run.completed_at else None,
        "logs": [
            {
                "level": log.level,
                "message": log.message,
                "remote_item_id": log.remote_item_id,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ],
    }


# Events

class EventUpdateRequest(BaseModel):
    """Request model for editing an event; omitted fields are left unchanged."""
    title: Optional[str] = Field(None, min_length=1, max_length=512)
    description: Optional[str] = None
    event_date: Optional[datetime] = None
    priority: Optional[str] = Field(None, description="critical, high, medium or low")
    status: Optional[str] = Field(None, description="upcoming, completed, missed or dismissed")


def serialize_event(event: Event) -> dict:
    return {
        "id": str(event.id),
        "title": event.title,
        "description": event.description,
        "event_date": event.event_date.isoformat() if event.event_date else None,
        "priority": event.priority,
        "status": event.status,
        "source": event.source,
    }


def load_event(event_id: str, user_id: str) -> Event:
    """Fetch an event owned by the user (404 otherwise)."""
    event = db_ops.get_event(parse_uuid(event_id, "event_id"))
    if not event or event.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event


@app.put("/api/v1/events/{event_id}")
async def update_event(event_id: str, request: EventUpdateRequest, user_id: str = Depends(get_current_user)):
    """Edit an event and propagate the change to every calendar it is linked to."""
    event = load_event(event_id, user_id)

    fields = request.model_dump(exclude_none=True)
    if "priority" in fields and fields["priority"] not in EVENT_PRIORITIES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid priority: {fields['priority']}")
    if "status" in fields and fields["status"] not in EVENT_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid status: {fields['status']}")
    if "event_date" in fields and fields["event_date"].tzinfo is not None:
        fields["event_date"] = fields["event_date"].astimezone(timezone.utc).replace(tzinfo=None)

    event = db_ops.update_event(event.id, **fields)
    remote_updates = await orchestrator.push_event_update(event.id)
    logger.info(f"Updated event {event.id}; {remote_updates} remote copies updated")

    payload = serialize_event(event)
    await emitter.emit(user_id, EVENT_UPDATED, payload)
    return {"success": True, "event": payload, "remote_updates": remote_updates}


@app.delete("/api/v1/events/{event_id}")
async def delete_event(event_id: str, user_id: str = Depends(get_current_user)):
    """Delete an event and its remote copies."""
    event = load_event(event_id, user_id)

    remote_deletions = await orchestrator.push_event_deletion(event.id)
    db_ops.delete_event(event.id, user_id)
    logger.info(f"Deleted event {event.id}; {remote_deletions} remote copies removed")

    await emitter.emit(user_id, EVENT_DELETED, str(event.id))
    return {"success": True, "remote_deletions": remote_deletions}


# Notifications

@app.get("/api/v1/notifications")
async def list_notifications(
    limit: int = 50,
    unread_only: bool = False,
    user_id: str = Depends(get_current_user)
):
    """Newest first."""
    if limit < 1 or limit > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid limit: {limit}. Must be between 1 and 100."
        )
    notifications = notification_service.list(user_id, limit=limit, unread_only=unread_only)
    return {
        "notifications": [serialize_notification(n) for n in notifications],
        "unread_count": notification_service.unread_count(user_id),
    }


@app.get("/api/v1/notifications/count")
async def notification_count(user_id: str = Depends(get_current_user)):
    return {"count": notification_service.unread_count(user_id)}


@app.put("/api/v1/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, user_id: str = Depends(get_current_user)):
    notification = await notification_service.mark_read(parse_uuid(notification_id, "notification_id"), user_id)
    return {"success": True, "notification": serialize_notification(notification)}


@app.post("/api/v1/notifications/read-all")
async def mark_all_notifications_read(user_id: str = Depends(get_current_user)):
    count = await notification_service.mark_all_read(user_id)
    return {"success": True, "count": count}


@app.delete("/api/v1/notifications/{notification_id}")
async def delete_notification(notification_id: str, user_id: str = Depends(get_current_user)):
    await notification_service.delete(parse_uuid(notification_id, "notification_id"), user_id)
    return {"success": True}


# Live events

async def handle_client_message(websocket: WebSocket, user_id: str, message: dict):
    """Route a client -> server socket message to the notification service."""
    event = message.get("event") if isinstance(message, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    notification_id = data.get("id") if isinstance(data, dict) else data

    try:
        if event == "notification:mark-read":
            await notification_service.mark_read(parse_uuid(str(notification_id), "notification_id"), user_id)
        elif event == "notification:mark-all-read":
            await notification_service.mark_all_read(user_id)
        elif event == "notification:delete":
            await notification_service.delete(parse_uuid(str(notification_id), "notification_id"), user_id)
        else:
            logger.warning(f"Ignoring unknown socket event {event!r} from user {user_id}")
    except (NotificationNotFound, HTTPException) as e:
        detail = e.detail if isinstance(e, HTTPException) else str(e)
        await websocket.send_json({"event": "error", "data": {"message": detail}})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    Per-user live event socket.

    The bearer credential comes from the ``token`` query parameter or the
    Authorization header and is verified once; invalid credentials close the
    socket with 1008 before it is accepted.
    """
    credential = token or extract_bearer_token(websocket.headers.get("authorization"))
    user_id = verify_access_token(credential)
    if not user_id:
        logger.warning("Rejecting socket with missing or invalid credential")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    emitter.register(user_id, websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                logger.warning(f"Ignoring malformed socket message from user {user_id}")
                continue
            await handle_client_message(websocket, user_id, message)
    except WebSocketDisconnect:
        logger.info(f"Socket closed for user {user_id}")
    finally:
        emitter.unregister(user_id, websocket)


if __name__ == "__main__":
    import uvicorn

    port = get_int_env("API_PORT", 8001)
    uvicorn.run(app, host="0.0.0.0", port=port)
