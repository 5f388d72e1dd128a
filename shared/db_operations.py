"""Database operations for the legal companion sync workflow."""

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import create_engine, or_, select, func as sql_func
from sqlalchemy.orm import Session, sessionmaker

from shared.db_models import (
    Base, Connection, MirrorRecord, Document, Event, Notification, SyncRun, SyncLog
)
from shared.config import get_database_url

IdLike = Union[UUID, str]


def as_uuid(value: IdLike) -> UUID:
    """Coerce a UUID or its string form to UUID (raises ValueError if malformed)."""
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


class DatabaseOperations:
    """Handles all database operations for the sync application."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Connection Operations

    def create_connection(
        self,
        user_id: str,
        kind: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expiry: Optional[datetime],
        encryption_service: 'EncryptionService',
        **scope
    ) -> Connection:
        """
        Create a connection after a successful OAuth handshake.

        Args:
            user_id: Owning user
            kind: "drive" or "calendar"
            access_token: Plaintext access token (will be encrypted)
            refresh_token: Plaintext refresh token (will be encrypted), optional
            token_expiry: Absolute access token expiry
            encryption_service: Encryption service for encrypting tokens
            **scope: Optional column values (folder_id, calendar_id, time_zone, ...)

        Returns:
            The created Connection record
        """
        with self.get_session() as session:
            connection = Connection(
                id=uuid.uuid4(),
                user_id=user_id,
                kind=kind,
                access_token=encryption_service.encrypt(access_token),
                refresh_token=encryption_service.encrypt(refresh_token) if refresh_token else None,
                token_expiry=token_expiry,
                status='connected',
                **scope
            )
            session.add(connection)
            session.commit()
            session.refresh(connection)
            return connection

    def get_connection(self, connection_id: IdLike) -> Optional[Connection]:
        """Get a connection by ID."""
        with self.get_session() as session:
            return session.get(Connection, as_uuid(connection_id))

    def get_connection_for_user(self, connection_id: IdLike, user_id: str) -> Optional[Connection]:
        """Get a connection by ID only if it belongs to the user."""
        with self.get_session() as session:
            stmt = select(Connection).where(
                Connection.id == as_uuid(connection_id),
                Connection.user_id == user_id
            )
            return session.execute(stmt).scalar_one_or_none()

    def find_connection(self, user_id: str, kind: str, account_email: Optional[str]) -> Optional[Connection]:
        """Find an existing connection for the same user, provider kind and account."""
        with self.get_session() as session:
            stmt = select(Connection).where(
                Connection.user_id == user_id,
                Connection.kind == kind,
                Connection.account_email == account_email
            )
            return session.execute(stmt).scalars().first()

    def get_connections_by_user(self, user_id: str, kind: Optional[str] = None) -> List[Connection]:
        """Get all connections for a user, optionally filtered by kind."""
        with self.get_session() as session:
            stmt = select(Connection).where(Connection.user_id == user_id)
            if kind:
                stmt = stmt.where(Connection.kind == kind)
            stmt = stmt.order_by(Connection.created_at.asc())
            return list(session.execute(stmt).scalars().all())

    def update_connection(self, connection_id: IdLike, **fields) -> Optional[Connection]:
        """
        Update connection columns.

        Every keyword given is written, including explicit None values.

        Returns:
            The updated Connection record or None if not found
        """
        with self.get_session() as session:
            connection = session.get(Connection, as_uuid(connection_id))
            if not connection:
                return None

            for name, value in fields.items():
                if not hasattr(Connection, name):
                    raise ValueError(f"Unknown connection field: {name}")
                setattr(connection, name, value)
            connection.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(connection)
            return connection

    def store_connection_tokens(
        self,
        connection_id: IdLike,
        access_token: str,
        token_expiry: Optional[datetime],
        encryption_service: 'EncryptionService',
        refresh_token: Optional[str] = None
    ) -> Optional[Connection]:
        """
        Encrypt and persist a new access token (and optionally a new refresh token).

        Returns:
            The updated Connection record or None if not found
        """
        fields = {
            'access_token': encryption_service.encrypt(access_token),
            'token_expiry': token_expiry,
        }
        if refresh_token:
            fields['refresh_token'] = encryption_service.encrypt(refresh_token)
        return self.update_connection(connection_id, **fields)

    def get_connection_tokens(
        self,
        connection_id: IdLike,
        encryption_service: 'EncryptionService'
    ) -> Optional[dict]:
        """
        Retrieve and decrypt connection tokens.

        Returns:
            Dictionary with decrypted tokens (None for absent tokens), or None if not found
        """
        connection = self.get_connection(connection_id)
        if not connection:
            return None

        return {
            'connection_id': connection.id,
            'user_id': connection.user_id,
            'access_token': encryption_service.decrypt(connection.access_token) if connection.access_token else None,
            'refresh_token': encryption_service.decrypt(connection.refresh_token) if connection.refresh_token else None,
            'token_expiry': connection.token_expiry,
        }

    def disconnect_connection(self, connection_id: IdLike) -> Optional[Connection]:
        """Soft-disable a connection: clear its tokens and mark it disconnected."""
        return self.update_connection(
            connection_id,
            access_token=None,
            refresh_token=None,
            token_expiry=None,
            auto_sync=False,
            next_sync_at=None,
            status='disconnected'
        )

    def get_connections_due_for_sync(self, now: datetime) -> List[Connection]:
        """Get auto-sync connections whose next scheduled pass is due."""
        with self.get_session() as session:
            stmt = select(Connection).where(
                Connection.auto_sync.is_(True),
                Connection.sync_frequency != 'manual',
                Connection.status.in_(['connected', 'error']),
                (Connection.next_sync_at.is_(None)) | (Connection.next_sync_at <= now)
            ).order_by(Connection.next_sync_at.asc())
            return list(session.execute(stmt).scalars().all())

    # Mirror Record Operations

    def get_mirror_record(self, connection_id: IdLike, remote_item_id: str) -> Optional[MirrorRecord]:
        """
        Get the mirror record for one remote item.

        Args:
            connection_id: The connection ID
            remote_item_id: The provider's item ID

        Returns:
            MirrorRecord or None if the item has never been seen
        """
        with self.get_session() as session:
            stmt = select(MirrorRecord).where(
                MirrorRecord.connection_id == as_uuid(connection_id),
                MirrorRecord.remote_item_id == remote_item_id
            )
            return session.execute(stmt).scalar_one_or_none()

    def get_mirror_record_for_event(self, connection_id: IdLike, event_id: IdLike) -> Optional[MirrorRecord]:
        """Get the mirror record linking a local event to this connection, if any."""
        with self.get_session() as session:
            stmt = select(MirrorRecord).where(
                MirrorRecord.connection_id == as_uuid(connection_id),
                MirrorRecord.event_id == as_uuid(event_id)
            )
            return session.execute(stmt).scalars().first()

    def get_mirror_records_for_event(self, event_id: IdLike) -> List[MirrorRecord]:
        """Get every mirror record (across connections) that references a local event."""
        with self.get_session() as session:
            stmt = select(MirrorRecord).where(MirrorRecord.event_id == as_uuid(event_id))
            return list(session.execute(stmt).scalars().all())

    def get_mirror_records(self, connection_id: IdLike, sync_status: Optional[str] = None) -> List[MirrorRecord]:
        """Get all mirror records for a connection, optionally filtered by status."""
        with self.get_session() as session:
            stmt = select(MirrorRecord).where(MirrorRecord.connection_id == as_uuid(connection_id))
            if sync_status:
                stmt = stmt.where(MirrorRecord.sync_status == sync_status)
            stmt = stmt.order_by(MirrorRecord.id.asc())
            return list(session.execute(stmt).scalars().all())

    def upsert_mirror_record(
        self,
        connection_id: IdLike,
        remote_item_id: str,
        **fields
    ) -> MirrorRecord:
        """
        Insert or update the mirror record keyed on (connection_id, remote_item_id).

        Args:
            connection_id: The connection ID
            remote_item_id: The provider's item ID
            **fields: Column values to write (sync_status, remote_modified_at, ...)

        Returns:
            The created or updated MirrorRecord
        """
        connection_uuid = as_uuid(connection_id)
        with self.get_session() as session:
            record = session.execute(
                select(MirrorRecord).where(
                    MirrorRecord.connection_id == connection_uuid,
                    MirrorRecord.remote_item_id == remote_item_id
                )
            ).scalar_one_or_none()

            if record is None:
                record = MirrorRecord(connection_id=connection_uuid, remote_item_id=remote_item_id)
                session.add(record)

            for name, value in fields.items():
                if not hasattr(MirrorRecord, name):
                    raise ValueError(f"Unknown mirror record field: {name}")
                setattr(record, name, value)
            record.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(record)
            return record

    def update_mirror_record(self, record_id: int, **fields) -> Optional[MirrorRecord]:
        """Update a mirror record by its primary key."""
        with self.get_session() as session:
            record = session.get(MirrorRecord, record_id)
            if not record:
                return None

            for name, value in fields.items():
                if not hasattr(MirrorRecord, name):
                    raise ValueError(f"Unknown mirror record field: {name}")
                setattr(record, name, value)
            record.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(record)
            return record

    def record_mirror_failure(
        self,
        connection_id: IdLike,
        remote_item_id: str,
        error_message: str,
        **fields
    ) -> MirrorRecord:
        """
        Mark a remote item as failed, incrementing its retry count.

        Creates the record (retry_count=1) if the item has never been seen.
        """
        connection_uuid = as_uuid(connection_id)
        with self.get_session() as session:
            record = session.execute(
                select(MirrorRecord).where(
                    MirrorRecord.connection_id == connection_uuid,
                    MirrorRecord.remote_item_id == remote_item_id
                )
            ).scalar_one_or_none()

            if record is None:
                record = MirrorRecord(
                    connection_id=connection_uuid,
                    remote_item_id=remote_item_id,
                    retry_count=0
                )
                session.add(record)

            for name, value in fields.items():
                if not hasattr(MirrorRecord, name):
                    raise ValueError(f"Unknown mirror record field: {name}")
                setattr(record, name, value)

            record.sync_status = 'failed'
            record.retry_count = (record.retry_count or 0) + 1
            record.error_message = error_message
            record.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(record)
            return record

    def count_mirror_records_by_status(self, connection_id: IdLike) -> Dict[str, int]:
        """Count mirror records per sync status for a connection."""
        counts = {'pending': 0, 'completed': 0, 'failed': 0}
        with self.get_session() as session:
            stmt = select(MirrorRecord.sync_status, sql_func.count()).where(
                MirrorRecord.connection_id == as_uuid(connection_id)
            ).group_by(MirrorRecord.sync_status)
            for sync_status, count in session.execute(stmt).all():
                counts[sync_status] = count
        return counts

    def get_recent_mirror_failures(self, connection_id: IdLike, limit: int = 5) -> List[MirrorRecord]:
        """Get the most recently updated failed mirror records for a connection."""
        with self.get_session() as session:
            stmt = select(MirrorRecord).where(
                MirrorRecord.connection_id == as_uuid(connection_id),
                MirrorRecord.sync_status == 'failed'
            ).order_by(MirrorRecord.updated_at.desc()).limit(limit)
            return list(session.execute(stmt).scalars().all())

    # Document Operations

    def create_document(self, user_id: str, title: str, **fields) -> Document:
        """Create a document owned by the user."""
        with self.get_session() as session:
            document = Document(id=uuid.uuid4(), user_id=user_id, title=title, **fields)
            session.add(document)
            session.commit()
            session.refresh(document)
            return document

    def update_document(self, document_id: IdLike, **fields) -> Optional[Document]:
        """Update a document in place; returns None if it no longer exists."""
        with self.get_session() as session:
            document = session.get(Document, as_uuid(document_id))
            if not document:
                return None

            for name, value in fields.items():
                setattr(document, name, value)
            document.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(document)
            return document

    def get_document(self, document_id: IdLike) -> Optional[Document]:
        """Get a document by ID."""
        with self.get_session() as session:
            return session.get(Document, as_uuid(document_id))

    def get_documents_by_user(self, user_id: str) -> List[Document]:
        """Get all documents owned by a user."""
        with self.get_session() as session:
            stmt = select(Document).where(Document.user_id == user_id).order_by(Document.uploaded_at.asc())
            return list(session.execute(stmt).scalars().all())

    def get_expiring_documents(self, now: datetime, within_days: int = 7) -> List[Document]:
        """Get documents whose end date falls between now and now + within_days."""
        with self.get_session() as session:
            stmt = select(Document).where(
                Document.end_date.is_not(None),
                Document.end_date >= now,
                Document.end_date <= now + timedelta(days=within_days)
            )
            return list(session.execute(stmt).scalars().all())

    # Event Operations

    def create_event(self, user_id: str, title: str, event_date: datetime, **fields) -> Event:
        """Create an event owned by the user."""
        with self.get_session() as session:
            event = Event(id=uuid.uuid4(), user_id=user_id, title=title, event_date=event_date, **fields)
            session.add(event)
            session.commit()
            session.refresh(event)
            return event

    def update_event(self, event_id: IdLike, **fields) -> Optional[Event]:
        """Update an event in place; returns None if it no longer exists."""
        with self.get_session() as session:
            event = session.get(Event, as_uuid(event_id))
            if not event:
                return None

            for name, value in fields.items():
                setattr(event, name, value)
            event.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(event)
            return event

    def get_event(self, event_id: IdLike) -> Optional[Event]:
        """Get an event by ID."""
        with self.get_session() as session:
            return session.get(Event, as_uuid(event_id))

    def delete_event(self, event_id: IdLike, user_id: str) -> bool:
        """
        Delete an event, unlinking any mirror records that point at it.

        Returns:
            True if deleted, False if it does not belong to the user
        """
        with self.get_session() as session:
            event = session.execute(
                select(Event).where(Event.id == as_uuid(event_id), Event.user_id == user_id)
            ).scalar_one_or_none()
            if not event:
                return False

            records = session.execute(select(MirrorRecord).where(MirrorRecord.event_id == event.id)).scalars()
            for record in records:
                record.event_id = None
            session.delete(event)
            session.commit()
            return True

    def get_events_by_user(self, user_id: str) -> List[Event]:
        """Get all events owned by a user, ordered by date."""
        with self.get_session() as session:
            stmt = select(Event).where(Event.user_id == user_id).order_by(Event.event_date.asc())
            return list(session.execute(stmt).scalars().all())

    def get_events_between(self, start: datetime, end: datetime, status: str = 'upcoming') -> List[Event]:
        """Get events dated within [start, end] with the given status."""
        with self.get_session() as session:
            stmt = select(Event).where(
                Event.event_date >= start,
                Event.event_date <= end,
                Event.status == status
            ).order_by(Event.event_date.asc())
            return list(session.execute(stmt).scalars().all())

    def get_unlinked_events(self, user_id: str, connection_id: IdLike, limit: int = 100) -> List[Event]:
        """
        Get the user's upcoming events that still need pushing to this connection.

        Returns events with no mirror record on the connection and events whose
        push failed. Events pulled from the connection are never returned, even
        when their last pull failed, since the remote copy is authoritative.
        """
        with self.get_session() as session:
            linked = select(MirrorRecord.event_id).where(
                MirrorRecord.connection_id == as_uuid(connection_id),
                MirrorRecord.event_id.is_not(None),
                or_(MirrorRecord.sync_direction == 'pull', MirrorRecord.sync_status == 'completed')
            )
            stmt = select(Event).where(
                Event.user_id == user_id,
                Event.status == 'upcoming',
                Event.id.not_in(linked)
            ).order_by(Event.event_date.asc()).limit(limit)
            return list(session.execute(stmt).scalars().all())

    # Notification Operations

    def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        document_id: Optional[IdLike] = None,
        event_id: Optional[IdLike] = None,
        task_id: Optional[str] = None,
        actions: Optional[list] = None
    ) -> Notification:
        """Create an unread notification."""
        with self.get_session() as session:
            notification = Notification(
                id=uuid.uuid4(),
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                document_id=as_uuid(document_id) if document_id else None,
                event_id=as_uuid(event_id) if event_id else None,
                task_id=task_id,
                actions=actions,
                is_read=False,
                created_at=datetime.utcnow()
            )
            session.add(notification)
            session.commit()
            session.refresh(notification)
            return notification

    def get_notification(self, notification_id: IdLike, user_id: str) -> Optional[Notification]:
        """Get a notification only if it belongs to the user."""
        with self.get_session() as session:
            stmt = select(Notification).where(
                Notification.id == as_uuid(notification_id),
                Notification.user_id == user_id
            )
            return session.execute(stmt).scalar_one_or_none()

    def mark_notification_read(self, notification_id: IdLike, user_id: str) -> Optional[Notification]:
        """Mark one notification read; returns None if it does not belong to the user."""
        with self.get_session() as session:
            notification = session.execute(
                select(Notification).where(
                    Notification.id == as_uuid(notification_id),
                    Notification.user_id == user_id
                )
            ).scalar_one_or_none()

            if not notification:
                return None

            if not notification.is_read:
                notification.is_read = True
                notification.read_at = datetime.utcnow()

            session.commit()
            session.refresh(notification)
            return notification

    def mark_all_notifications_read(self, user_id: str) -> int:
        """Mark every unread notification of the user read; returns how many changed."""
        with self.get_session() as session:
            now = datetime.utcnow()
            result = session.query(Notification).filter(
                Notification.user_id == user_id,
                Notification.is_read.is_(False)
            ).update({'is_read': True, 'read_at': now}, synchronize_session=False)
            session.commit()
            return result

    def delete_notification(self, notification_id: IdLike, user_id: str) -> bool:
        """
        Delete a notification.

        Returns:
            True if deleted, False if it does not belong to the user
        """
        with self.get_session() as session:
            notification = session.execute(
                select(Notification).where(
                    Notification.id == as_uuid(notification_id),
                    Notification.user_id == user_id
                )
            ).scalar_one_or_none()

            if notification:
                session.delete(notification)
                session.commit()
                return True

            return False

    def get_notifications(
        self,
        user_id: str,
        limit: int = 50,
        unread_only: bool = False
    ) -> List[Notification]:
        """
        Get notifications for a user, newest first.

        Args:
            user_id: The user ID
            limit: Maximum number of notifications to return
            unread_only: Only return unread notifications

        Returns:
            List of Notification records
        """
        with self.get_session() as session:
            stmt = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                stmt = stmt.where(Notification.is_read.is_(False))
            stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
            return list(session.execute(stmt).scalars().all())

    def count_unread_notifications(self, user_id: str) -> int:
        """Count unread notifications for a user."""
        with self.get_session() as session:
            stmt = select(sql_func.count()).select_from(Notification).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False)
            )
            return session.execute(stmt).scalar() or 0

    def find_recent_notification(
        self,
        user_id: str,
        since: datetime,
        type: Optional[str] = None,
        document_id: Optional[IdLike] = None,
        event_id: Optional[IdLike] = None
    ) -> Optional[Notification]:
        """Find a notification created since the given instant matching the filters."""
        with self.get_session() as session:
            stmt = select(Notification).where(
                Notification.user_id == user_id,
                Notification.created_at >= since
            )
            if type:
                stmt = stmt.where(Notification.type == type)
            if document_id:
                stmt = stmt.where(Notification.document_id == as_uuid(document_id))
            if event_id:
                stmt = stmt.where(Notification.event_id == as_uuid(event_id))
            return session.execute(stmt.limit(1)).scalars().first()

    # Sync Run Tracking Operations

    def create_sync_run(
        self,
        run_id: UUID,
        connection_id: IdLike,
        user_id: str,
        direction: str = 'pull'
    ) -> SyncRun:
        """Create a sync run in 'running' state."""
        with self.get_session() as session:
            sync_run = SyncRun(
                run_id=run_id,
                connection_id=as_uuid(connection_id),
                user_id=user_id,
                direction=direction,
                status='running',
                created_at=datetime.utcnow()
            )
            session.add(sync_run)
            session.commit()
            session.refresh(sync_run)
            return sync_run

    def update_sync_run(
        self,
        run_id: UUID,
        status: Optional[str] = None,
        processed: Optional[int] = None,
        succeeded: Optional[int] = None,
        failed: Optional[int] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None
    ) -> Optional[SyncRun]:
        """
        Update a sync run with progress information.

        Returns:
            The updated SyncRun record or None if not found
        """
        with self.get_session() as session:
            sync_run = session.get(SyncRun, run_id)

            if not sync_run:
                return None

            if status is not None:
                sync_run.status = status
            if processed is not None:
                sync_run.processed = processed
            if succeeded is not None:
                sync_run.succeeded = succeeded
            if failed is not None:
                sync_run.failed = failed
            if error_message is not None:
                sync_run.error_message = error_message
            if completed_at is not None:
                sync_run.completed_at = completed_at

            session.commit()
            session.refresh(sync_run)
            return sync_run

    def get_sync_run(self, run_id: UUID) -> Optional[SyncRun]:
        """Get a sync run by ID."""
        with self.get_session() as session:
            return session.get(SyncRun, run_id)

    def get_latest_sync_run(self, connection_id: IdLike) -> Optional[SyncRun]:
        """Get the most recent sync run for a connection."""
        with self.get_session() as session:
            stmt = select(SyncRun).where(
                SyncRun.connection_id == as_uuid(connection_id)
            ).order_by(SyncRun.created_at.desc()).limit(1)
            return session.execute(stmt).scalars().first()

    # Sync Log Operations

    def add_sync_log(
        self,
        run_id: UUID,
        level: str,
        message: str,
        remote_item_id: Optional[str] = None
    ) -> SyncLog:
        """
        Add a log entry for a sync run.

        Args:
            run_id: The run ID
            level: Log level (INFO, WARNING, ERROR)
            message: Log message
            remote_item_id: Optional remote item ID related to this log

        Returns:
            The created SyncLog record
        """
        with self.get_session() as session:
            sync_log = SyncLog(
                run_id=run_id,
                level=level,
                message=message,
                remote_item_id=remote_item_id,
                created_at=datetime.utcnow()
            )
            session.add(sync_log)
            session.commit()
            session.refresh(sync_log)
            return sync_log

    def get_sync_logs(self, run_id: UUID, limit: int = 100) -> List[SyncLog]:
        """Get log entries for a sync run, oldest first."""
        with self.get_session() as session:
            stmt = select(SyncLog).where(
                SyncLog.run_id == run_id
            ).order_by(
                SyncLog.created_at.asc(), SyncLog.id.asc()
            ).limit(limit)

            result = session.execute(stmt)
            return list(result.scalars().all())
