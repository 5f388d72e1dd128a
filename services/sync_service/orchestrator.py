"""Sync orchestration logic."""

import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional
from uuid import UUID, uuid4

import httpx
from sqlalchemy.exc import SQLAlchemyError

from shared.db_models import Connection, Event, MirrorRecord
from shared.db_operations import DatabaseOperations, IdLike, as_uuid
from shared.document_storage import DocumentStorage, build_document_key
from shared.emitter import DOCUMENT_PROCESSED, SYNC_COMPLETED, SYNC_PROGRESS, EventEmitter
from shared.errors import (
    ConnectionNotFound, ItemPersistenceFailed, ItemTransferFailed
)
from shared.models import (
    CONNECTION_CONNECTED, CONNECTION_DISCONNECTED, CONNECTION_ERROR, CONNECTION_SYNCING,
    MIRROR_COMPLETED, MIRROR_FAILED, RemoteItem, SyncItemError, SyncProgress, SyncResult
)
from shared.token_manager import TokenManager
from services.notification_service.notifications import NotificationService
from services.sync_service.calendar_client import CalendarClient
from services.sync_service.drive_client import DriveClient, is_google_workspace_file
from services.sync_service.google_api import GoogleAPIError, format_google_datetime, parse_google_datetime
from services.sync_service.listing import (
    CALENDAR_EVENT_CONTENT_TYPE, RemoteListingClient, drive_file_to_item
)
from services.sync_service.pass_guard import PassGuard, pass_guard
from services.sync_service.scheduler import compute_next_sync_at
from services.sync_service.validation import validate_calendar_event, validate_document_file

logger = logging.getLogger(__name__)

LOCAL_KEY_PREFIX = "local:"
PUSHED_EVENT_DURATION = timedelta(hours=1)
PUSHED_EVENT_REMINDER_MINUTES = 24 * 60

ProgressCallback = Callable[[SyncProgress], object]


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def build_calendar_event_body(event: Event, time_zone: str) -> Dict:
    """Google Calendar body for a local event: one hour long, popup reminder a day before."""
    start = event.event_date
    return {
        "summary": event.title,
        "description": event.description or "",
        "start": {"dateTime": format_google_datetime(start), "timeZone": time_zone},
        "end": {"dateTime": format_google_datetime(start + PUSHED_EVENT_DURATION), "timeZone": time_zone},
        "reminders": {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": PUSHED_EVENT_REMINDER_MINUTES}],
        },
    }


class SyncOrchestrator:
    """Reconciles remote Drive files and Calendar events with local records, one pass at a time."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        token_manager: TokenManager,
        listing_client: RemoteListingClient,
        drive_client: DriveClient,
        calendar_client: CalendarClient,
        document_storage: DocumentStorage,
        emitter: EventEmitter,
        notification_service: NotificationService,
        guard: PassGuard = pass_guard,
        page_size: int = 100,
        modified_tolerance_seconds: float = 1.0
    ):
        """
        Initialize the sync orchestrator.

        Args:
            db_ops: Database operations instance
            token_manager: Supplies valid access tokens
            listing_client: Lists remote items per connection scope
            drive_client: Drive API client (downloads)
            calendar_client: Calendar API client (event bodies, push)
            document_storage: Where downloaded file bytes are kept
            emitter: Live progress channel
            notification_service: User notifications and operator alerts
            guard: Single-flight guard shared across orchestrators
            page_size: Maximum remote items handled per pass
            modified_tolerance_seconds: Remote-modified instants closer than this count as unchanged
        """
        self.db_ops = db_ops
        self.token_manager = token_manager
        self.listing_client = listing_client
        self.drive_client = drive_client
        self.calendar_client = calendar_client
        self.document_storage = document_storage
        self.emitter = emitter
        self.notification_service = notification_service
        self.guard = guard
        self.page_size = page_size
        self.modified_tolerance = timedelta(seconds=modified_tolerance_seconds)

    # Public passes

    async def run_sync_pass(self, connection_id: IdLike, on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """
        Pull one page of remote items into local records.

        For each item, in listing order: skip it when its mirror record is
        completed and unchanged, otherwise fetch, validate and persist it.
        Item failures are recorded on the item's mirror record and the pass
        continues.

        Args:
            connection_id: Connection to sync
            on_progress: Optional callback (sync or async) called after every item

        Returns:
            SyncResult with processed/succeeded/failed counts and item errors

        Raises:
            SyncAlreadyRunning: If a pass is already in flight for the connection
            ConnectionNotFound, TokenMissing, RefreshFailed, RemoteListingFailed:
                Pass-fatal errors; the connection is left in error state
        """
        with self.guard.hold(as_uuid(connection_id)):
            return await self._execute_pass(connection_id, "pull", on_progress)

    async def run_push_pass(self, connection_id: IdLike, on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """Create the user's unlinked upcoming events on the connection's calendar."""
        with self.guard.hold(as_uuid(connection_id)):
            return await self._execute_pass(connection_id, "push", on_progress)

    async def run_bidirectional_pass(
        self,
        connection_id: IdLike,
        on_progress: Optional[ProgressCallback] = None
    ) -> SyncResult:
        """Push then pull under a single guard; counts are combined."""
        with self.guard.hold(as_uuid(connection_id)):
            return await self._execute_pass(connection_id, "bidirectional", on_progress)

    async def run_claimed_pass(
        self,
        connection_id: IdLike,
        direction: str,
        on_progress: Optional[ProgressCallback] = None
    ) -> SyncResult:
        """
        Run a pass whose guard the caller already acquired, releasing it afterwards.

        Lets a request handler reject a concurrent trigger synchronously and
        then run the pass in the background.
        """
        if direction not in ("pull", "push", "bidirectional"):
            self.guard.release(as_uuid(connection_id))
            raise ValueError(f"Invalid sync direction: {direction}")
        try:
            return await self._execute_pass(connection_id, direction, on_progress)
        finally:
            self.guard.release(as_uuid(connection_id))

    async def sync_single_file(self, connection_id: IdLike, remote_file_id: str) -> Dict:
        """
        Sync one Drive file outside of a full pass.

        Returns:
            {"success": True, "document_id": ...} or {"success": False, "error": ...}

        Raises:
            ConnectionNotFound: If the connection does not exist
            SyncAlreadyRunning: If a pass is in flight for the connection
        """
        connection = self.db_ops.get_connection(connection_id)
        if not connection:
            raise ConnectionNotFound(connection_id)
        if connection.kind != "drive":
            return {"success": False, "error": "Single-file sync is only available for Drive connections"}

        with self.guard.hold(connection.id):
            item = None
            try:
                access_token = await self.token_manager.ensure_valid_access_token(connection.id)
                try:
                    resource = await self.drive_client.get_file(access_token, remote_file_id)
                except (GoogleAPIError, httpx.HTTPError) as e:
                    raise ItemTransferFailed(f"Failed to get file {remote_file_id}: {e}") from e
                item = drive_file_to_item(resource)

                await self._pull_item(connection, access_token, item)
                record = self.db_ops.get_mirror_record(connection.id, item.remote_id)
                logger.info(f"Synced single file {remote_file_id} for connection {connection.id}")
                return {"success": True, "document_id": str(record.document_id)}

            except Exception as e:
                logger.error(f"Failed to sync file {remote_file_id}: {e}", exc_info=True)
                if item is not None:
                    self._record_pull_failure(connection, item, e)
                return {"success": False, "error": str(e)}

    async def push_event_update(self, event_id: IdLike) -> int:
        """
        Propagate a local edit of an event to every calendar it is linked to.

        Failures are recorded on the mirror record and never raised.

        Returns:
            Number of remote copies updated
        """
        event = self.db_ops.get_event(event_id)
        if not event:
            return 0

        updated = 0
        for record, connection in self._linked_calendar_records(event_id):
            try:
                access_token = await self.token_manager.ensure_valid_access_token(connection.id)
                remote = await self.calendar_client.update_event(
                    access_token,
                    connection.calendar_id or "primary",
                    record.remote_item_id,
                    build_calendar_event_body(event, connection.time_zone or "UTC")
                )
                self.db_ops.update_mirror_record(
                    record.id,
                    remote_name=remote.get("summary", event.title),
                    remote_modified_at=parse_google_datetime(remote.get("updated")),
                    sync_status=MIRROR_COMPLETED,
                    error_message=None,
                    last_sync_at=datetime.utcnow()
                )
                updated += 1
            except Exception as e:
                logger.error(f"Failed to push update of event {event_id} to {record.remote_item_id}: {e}", exc_info=True)
                self.db_ops.update_mirror_record(
                    record.id,
                    sync_status=MIRROR_FAILED,
                    retry_count=(record.retry_count or 0) + 1,
                    error_message=str(e)
                )
        return updated

    async def push_event_deletion(self, event_id: IdLike) -> int:
        """
        Delete the remote copies of a local event; call before deleting the event itself.

        Mirror records are kept but unlinked from the event. Failures are
        recorded on the mirror record and never raised.

        Returns:
            Number of remote copies removed
        """
        removed = 0
        for record, connection in self._linked_calendar_records(event_id):
            try:
                access_token = await self.token_manager.ensure_valid_access_token(connection.id)
                await self.calendar_client.delete_event(
                    access_token, connection.calendar_id or "primary", record.remote_item_id
                )
                self.db_ops.update_mirror_record(
                    record.id,
                    event_id=None,
                    sync_status=MIRROR_COMPLETED,
                    error_message=None,
                    last_sync_at=datetime.utcnow()
                )
                removed += 1
            except Exception as e:
                logger.error(f"Failed to push deletion of event {event_id} to {record.remote_item_id}: {e}", exc_info=True)
                self.db_ops.update_mirror_record(
                    record.id,
                    sync_status=MIRROR_FAILED,
                    retry_count=(record.retry_count or 0) + 1,
                    error_message=str(e)
                )
        return removed

    # Pass skeleton

    async def _execute_pass(
        self,
        connection_id: IdLike,
        direction: str,
        on_progress: Optional[ProgressCallback]
    ) -> SyncResult:
        connection = self.db_ops.get_connection(connection_id)
        if not connection:
            raise ConnectionNotFound(connection_id)
        if direction in ("push", "bidirectional") and connection.kind != "calendar":
            raise ValueError(f"Push is only supported for calendar connections, not {connection.kind}")

        run_id = uuid4()
        logger.info(f"Starting {direction} pass {run_id} for connection {connection.id} ({connection.kind})")

        self.db_ops.update_connection(connection.id, status=CONNECTION_SYNCING)
        self.db_ops.create_sync_run(run_id, connection.id, connection.user_id, direction=direction)
        self.db_ops.add_sync_log(run_id, 'INFO', f'Starting {direction} sync for connection {connection.id}')

        result = SyncResult()
        try:
            access_token = await self.token_manager.ensure_valid_access_token(connection.id)

            if direction in ("push", "bidirectional"):
                result = result.merge(await self._push_items(connection, access_token, run_id, on_progress))
            if direction in ("pull", "bidirectional"):
                result = result.merge(await self._pull_items(connection, access_token, run_id, on_progress))

        except Exception as e:
            await self._fail_pass(connection, run_id, direction, e)
            raise

        await self._complete_pass(connection, run_id, direction, result)
        return result

    async def _complete_pass(self, connection: Connection, run_id: UUID, direction: str, result: SyncResult):
        now = datetime.utcnow()
        logger.info(
            f"Pass {run_id} completed: {result.processed} processed, "
            f"{result.succeeded} succeeded, {result.failed} failed"
        )

        self.db_ops.update_connection(
            connection.id,
            status=CONNECTION_CONNECTED if result.failed == 0 else CONNECTION_ERROR,
            total_items=result.processed,
            synced_items=result.succeeded,
            failed_items=result.failed,
            last_sync_at=now,
            next_sync_at=compute_next_sync_at(connection, now)
        )
        self.db_ops.update_sync_run(
            run_id,
            status='completed',
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            completed_at=now
        )
        self.db_ops.add_sync_log(
            run_id,
            'INFO',
            f'Sync completed: {result.succeeded} succeeded, {result.failed} failed'
        )

        await self._emit(connection.user_id, SYNC_COMPLETED, {
            "connection_id": str(connection.id),
            "kind": connection.kind,
            "direction": direction,
            "processed": result.processed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "success": result.success,
        })
        await self.notification_service.notify_sync_completed(
            connection.user_id, connection.kind, result.processed, result.success
        )

    async def _fail_pass(self, connection: Connection, run_id: UUID, direction: str, error: Exception):
        now = datetime.utcnow()
        error_msg = str(error) or error.__class__.__name__
        logger.error(f"Pass {run_id} for connection {connection.id} failed: {error_msg}", exc_info=True)

        self.db_ops.update_connection(
            connection.id,
            status=CONNECTION_ERROR,
            next_sync_at=compute_next_sync_at(connection, now)
        )
        self.db_ops.update_sync_run(run_id, status='failed', error_message=error_msg, completed_at=now)
        self.db_ops.add_sync_log(run_id, 'ERROR', f'Sync failed: {error_msg}')

        await self._emit(connection.user_id, SYNC_COMPLETED, {
            "connection_id": str(connection.id),
            "kind": connection.kind,
            "direction": direction,
            "processed": 0,
            "success": False,
            "error": error_msg,
        })
        await self.notification_service.notify_sync_failed(connection.user_id, connection.kind, error_msg)
        await self.notification_service.send_critical_error_alert(
            run_id=str(run_id),
            user_id=connection.user_id,
            error_message=error_msg,
            context={"connection_id": str(connection.id), "direction": direction, "error_type": type(error).__name__}
        )

    # Pull

    async def _pull_items(
        self,
        connection: Connection,
        access_token: str,
        run_id: UUID,
        on_progress: Optional[ProgressCallback]
    ) -> SyncResult:
        page = await self.listing_client.list_remote_items(connection, access_token, page_size=self.page_size)
        total = len(page.items)
        self.db_ops.add_sync_log(run_id, 'INFO', f'Listed {total} remote items')

        result = SyncResult()
        for index, item in enumerate(page.items, start=1):
            try:
                outcome = await self._pull_item(connection, access_token, item)
                result.succeeded += 1
                self.db_ops.add_sync_log(run_id, 'INFO', f'{outcome.capitalize()} {item.name}', remote_item_id=item.remote_id)
            except Exception as e:
                logger.error(f"Failed to sync item {item.remote_id} ({item.name}): {e}", exc_info=True)
                self._record_pull_failure(connection, item, e)
                result.failed += 1
                result.errors.append(SyncItemError(remote_id=item.remote_id, name=item.name, error=str(e)))
                self.db_ops.add_sync_log(run_id, 'ERROR', f'Failed to sync {item.name}: {e}', remote_item_id=item.remote_id)

            result.processed += 1
            await self._report_progress(connection, index, total, item.name, result, on_progress)

        return result

    async def _pull_item(self, connection: Connection, access_token: str, item: RemoteItem) -> str:
        """Sync one remote item; returns "skipped", "created" or "updated"."""
        record = self.db_ops.get_mirror_record(connection.id, item.remote_id)
        if self._is_unchanged(record, item):
            logger.debug(f"Skipping unchanged item {item.remote_id}")
            return "skipped"

        if connection.kind == "drive":
            created, reference = await self._materialize_document(connection, access_token, item, record)
        else:
            created, reference = await self._materialize_event(connection, access_token, item, record)

        fields = dict(
            remote_name=item.name,
            content_type=item.content_type,
            size=item.size,
            remote_created_at=_naive_utc(item.created_at),
            remote_modified_at=_naive_utc(item.modified_at),
            sync_status=MIRROR_COMPLETED,
            error_message=None,
            last_sync_at=datetime.utcnow(),
            **reference
        )
        if record is None:
            fields["sync_direction"] = "pull"
        self._persist(self.db_ops.upsert_mirror_record, connection.id, item.remote_id, **fields)

        return "created" if created else "updated"

    def _is_unchanged(self, record: Optional[MirrorRecord], item: RemoteItem) -> bool:
        if record is None or record.sync_status != MIRROR_COMPLETED:
            return False
        stored = _naive_utc(record.remote_modified_at)
        current = _naive_utc(item.modified_at)
        if stored is None or current is None:
            return False
        return abs(stored - current) <= self.modified_tolerance

    async def _materialize_document(
        self,
        connection: Connection,
        access_token: str,
        item: RemoteItem,
        record: Optional[MirrorRecord]
    ):
        try:
            content = await self.drive_client.download_file(access_token, item.remote_id, item.content_type)
        except (GoogleAPIError, httpx.HTTPError) as e:
            raise ItemTransferFailed(f"Failed to download {item.name}: {e}") from e

        name, content_type = item.name, item.content_type
        if is_google_workspace_file(content_type):
            content_type = "application/pdf"
            if not name.lower().endswith(".pdf"):
                name = f"{name}.pdf"

        validate_document_file(name, content_type, len(content))

        key = build_document_key(connection.user_id, item.remote_id, name)
        file_url = await self.document_storage.store(content, key, content_type)

        fields = dict(
            title=name,
            file_url=file_url,
            file_size=len(content),
            mime_type=content_type,
            source="google_drive",
        )

        if record is not None and record.document_id is not None:
            document = self._persist(self.db_ops.update_document, record.document_id, **fields)
            if document is not None:
                return False, {"document_id": document.id}
            logger.warning(f"Document {record.document_id} for item {item.remote_id} is gone, recreating")

        document = self._persist(self.db_ops.create_document, connection.user_id, **fields)
        await self._emit(connection.user_id, DOCUMENT_PROCESSED, {
            "document_id": str(document.id),
            "title": document.title,
            "source": document.source,
        })
        return True, {"document_id": document.id}

    async def _materialize_event(
        self,
        connection: Connection,
        access_token: str,
        item: RemoteItem,
        record: Optional[MirrorRecord]
    ):
        try:
            body = await self.calendar_client.get_event(
                access_token, connection.calendar_id or "primary", item.remote_id
            )
        except (GoogleAPIError, httpx.HTTPError) as e:
            raise ItemTransferFailed(f"Failed to read event {item.name}: {e}") from e

        validate_calendar_event(body)

        start = body["start"]
        fields = dict(
            title=body["summary"],
            description=body.get("description") or "",
            event_date=parse_google_datetime(start.get("dateTime") or start.get("date")),
            source="google_calendar",
        )

        if record is not None and record.event_id is not None:
            event = self._persist(self.db_ops.update_event, record.event_id, **fields)
            if event is not None:
                return False, {"event_id": event.id}
            logger.warning(f"Event {record.event_id} for item {item.remote_id} is gone, recreating")

        event = self._persist(self.db_ops.create_event, connection.user_id, **fields)
        return True, {"event_id": event.id}

    def _record_pull_failure(self, connection: Connection, item: RemoteItem, error: Exception):
        self.db_ops.record_mirror_failure(
            connection.id,
            item.remote_id,
            str(error),
            remote_name=item.name,
            content_type=item.content_type,
            size=item.size,
            remote_created_at=_naive_utc(item.created_at),
            remote_modified_at=_naive_utc(item.modified_at),
            last_sync_at=datetime.utcnow()
        )

    # Push

    async def _push_items(
        self,
        connection: Connection,
        access_token: str,
        run_id: UUID,
        on_progress: Optional[ProgressCallback]
    ) -> SyncResult:
        events = self.db_ops.get_unlinked_events(connection.user_id, connection.id, limit=self.page_size)
        total = len(events)
        self.db_ops.add_sync_log(run_id, 'INFO', f'Pushing {total} local events')

        result = SyncResult()
        for index, event in enumerate(events, start=1):
            record = self.db_ops.get_mirror_record_for_event(connection.id, event.id)
            try:
                remote_id = await self._push_event(connection, access_token, event, record)
                result.succeeded += 1
                self.db_ops.add_sync_log(run_id, 'INFO', f'Pushed {event.title}', remote_item_id=remote_id)
            except Exception as e:
                logger.error(f"Failed to push event {event.id} ({event.title}): {e}", exc_info=True)
                self._record_push_failure(connection, event, record, e)
                result.failed += 1
                result.errors.append(SyncItemError(remote_id=str(event.id), name=event.title, error=str(e)))
                self.db_ops.add_sync_log(run_id, 'ERROR', f'Failed to push {event.title}: {e}')

            result.processed += 1
            await self._report_progress(connection, index, total, event.title, result, on_progress)

        return result

    async def _push_event(
        self,
        connection: Connection,
        access_token: str,
        event: Event,
        record: Optional[MirrorRecord]
    ) -> str:
        calendar_id = connection.calendar_id or "primary"
        body = build_calendar_event_body(event, connection.time_zone or "UTC")
        is_linked = record is not None and not record.remote_item_id.startswith(LOCAL_KEY_PREFIX)

        try:
            if is_linked:
                remote = await self.calendar_client.update_event(access_token, calendar_id, record.remote_item_id, body)
            else:
                remote = await self.calendar_client.create_event(access_token, calendar_id, body)
        except (GoogleAPIError, httpx.HTTPError) as e:
            raise ItemTransferFailed(f"Failed to push {event.title}: {e}") from e

        fields = dict(
            remote_name=remote.get("summary", event.title),
            content_type=CALENDAR_EVENT_CONTENT_TYPE,
            remote_created_at=parse_google_datetime(remote.get("created")),
            remote_modified_at=parse_google_datetime(remote.get("updated")),
            sync_status=MIRROR_COMPLETED,
            error_message=None,
            event_id=event.id,
            last_sync_at=datetime.utcnow()
        )
        if record is not None:
            self._persist(self.db_ops.update_mirror_record, record.id, remote_item_id=remote["id"], **fields)
        else:
            self._persist(
                self.db_ops.upsert_mirror_record, connection.id, remote["id"], sync_direction="push", **fields
            )
        return remote["id"]

    def _record_push_failure(
        self,
        connection: Connection,
        event: Event,
        record: Optional[MirrorRecord],
        error: Exception
    ):
        if record is not None:
            self.db_ops.update_mirror_record(
                record.id,
                sync_status=MIRROR_FAILED,
                retry_count=(record.retry_count or 0) + 1,
                error_message=str(error)
            )
        else:
            self.db_ops.record_mirror_failure(
                connection.id,
                f"{LOCAL_KEY_PREFIX}{event.id}",
                str(error),
                remote_name=event.title,
                content_type=CALENDAR_EVENT_CONTENT_TYPE,
                sync_direction="push",
                event_id=event.id,
                last_sync_at=datetime.utcnow()
            )

    def _linked_calendar_records(self, event_id: IdLike):
        """Mirror records of the event that point at a real remote event on a live calendar connection."""
        for record in self.db_ops.get_mirror_records_for_event(event_id):
            if record.remote_item_id.startswith(LOCAL_KEY_PREFIX):
                continue
            connection = self.db_ops.get_connection(record.connection_id)
            if connection is None or connection.kind != "calendar" or connection.status == CONNECTION_DISCONNECTED:
                continue
            yield record, connection

    # Helpers

    @staticmethod
    def _persist(operation, *args, **kwargs):
        try:
            return operation(*args, **kwargs)
        except SQLAlchemyError as e:
            raise ItemPersistenceFailed(f"Failed to save record: {e}") from e

    async def _report_progress(
        self,
        connection: Connection,
        index: int,
        total: int,
        item_name: str,
        result: SyncResult,
        on_progress: Optional[ProgressCallback]
    ):
        progress = SyncProgress(
            connection_id=str(connection.id),
            index=index,
            total=total,
            item_name=item_name,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        await self._emit(connection.user_id, SYNC_PROGRESS, {
            "connection_id": progress.connection_id,
            "current": progress.index,
            "total": progress.total,
            "item_name": progress.item_name,
            "succeeded": progress.succeeded,
            "failed": progress.failed,
        })

        if on_progress is not None:
            outcome = on_progress(progress)
            if inspect.isawaitable(outcome):
                await outcome

    async def _emit(self, user_id: str, event: str, payload: Dict):
        try:
            await self.emitter.emit(user_id, event, payload)
        except Exception as e:
            logger.warning(f"Failed to emit {event} for user {user_id}: {e}")
