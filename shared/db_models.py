"""SQLAlchemy database models for the legal companion sync workflow."""

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, Text, DateTime, ForeignKey, Index, JSON,
    TypeDecorator
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36), storing as stringified hex values.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, uuid.UUID):
                return str(value)
            return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, str):
                return uuid.UUID(value)
            return value


Base = declarative_base()


class Connection(Base):
    """Model for connections table (one authorized Drive folder or Calendar)."""
    __tablename__ = 'connections'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)  # drive, calendar
    account_email = Column(String(255), nullable=True)

    access_token = Column(Text, nullable=True)   # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    token_expiry = Column(DateTime, nullable=True)

    folder_id = Column(String(255), nullable=False, default='root')
    folder_name = Column(String(255), nullable=True)
    include_subfolders = Column(Boolean, default=True)
    calendar_id = Column(String(255), nullable=True)
    calendar_name = Column(String(255), nullable=True)
    time_zone = Column(String(64), nullable=False, default='UTC')

    auto_sync = Column(Boolean, default=False)
    sync_frequency = Column(String(20), nullable=False, default='manual')  # manual, hourly, daily
    next_sync_at = Column(DateTime, nullable=True)

    status = Column(String(20), nullable=False, default='connected')  # connected, syncing, error, disconnected
    total_items = Column(Integer, default=0)
    synced_items = Column(Integer, default=0)
    failed_items = Column(Integer, default=0)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_connections_user_kind', 'user_id', 'kind'),
    )


class MirrorRecord(Base):
    """Model for mirror_records table (local shadow of one remote item)."""
    __tablename__ = 'mirror_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    connection_id = Column(UUID(), ForeignKey('connections.id'), nullable=False)
    remote_item_id = Column(String(255), nullable=False)
    remote_name = Column(String(512), nullable=True)
    content_type = Column(String(255), nullable=True)
    size = Column(BigInteger, nullable=True)
    remote_created_at = Column(DateTime, nullable=True)
    remote_modified_at = Column(DateTime, nullable=True)
    sync_status = Column(String(20), nullable=False, default='pending')  # completed, failed, pending
    sync_direction = Column(String(10), nullable=False, default='pull')  # pull, push
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    document_id = Column(UUID(), ForeignKey('documents.id'), nullable=True)
    event_id = Column(UUID(), ForeignKey('events.id'), nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_mirror_records_connection_item', 'connection_id', 'remote_item_id', unique=True),
        Index('idx_mirror_records_connection_status', 'connection_id', 'sync_status'),
    )


class Document(Base):
    """Model for documents table."""
    __tablename__ = 'documents'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)
    title = Column(String(512), nullable=False)
    category = Column(String(50), nullable=False, default='other')
    status = Column(String(20), nullable=False, default='uploaded')
    source = Column(String(20), nullable=False, default='upload')  # upload, google_drive
    file_url = Column(Text, nullable=True)
    file_size = Column(BigInteger, default=0)
    mime_type = Column(String(255), nullable=True)
    end_date = Column(DateTime, nullable=True)
    uploaded_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_documents_user', 'user_id'),
    )


class Event(Base):
    """Model for events table (deadlines and calendar entries)."""
    __tablename__ = 'events'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)
    document_id = Column(UUID(), ForeignKey('documents.id'), nullable=True)
    title = Column(String(512), nullable=False)
    description = Column(Text, nullable=False, default='')
    event_date = Column(DateTime, nullable=False)
    priority = Column(String(20), nullable=False, default='medium')  # critical, high, medium, low
    status = Column(String(20), nullable=False, default='upcoming')  # upcoming, completed, missed, dismissed
    source = Column(String(20), nullable=False, default='app')  # app, google_calendar
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_events_user_date', 'user_id', 'event_date'),
    )


class Notification(Base):
    """Model for notifications table."""
    __tablename__ = 'notifications'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False)  # critical, warning, info, success
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    document_id = Column(UUID(), nullable=True)
    event_id = Column(UUID(), nullable=True)
    task_id = Column(String(255), nullable=True)
    actions = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_notifications_user_created', 'user_id', 'created_at'),
    )


class SyncRun(Base):
    """Model for sync_runs table (one row per pass)."""
    __tablename__ = 'sync_runs'

    run_id = Column(UUID(), primary_key=True)
    connection_id = Column(UUID(), ForeignKey('connections.id'), nullable=False)
    user_id = Column(String(255), nullable=False)
    direction = Column(String(20), nullable=False, default='pull')  # pull, push, bidirectional
    status = Column(String(20), nullable=False)  # running, completed, failed
    processed = Column(Integer, default=0)
    succeeded = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_sync_runs_connection_created', 'connection_id', 'created_at'),
    )


class SyncLog(Base):
    """Model for sync_logs table."""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(UUID(), ForeignKey('sync_runs.run_id'), nullable=False)
    remote_item_id = Column(String(255), nullable=True)
    level = Column(String(20), nullable=False)  # INFO, WARNING, ERROR
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_sync_logs_run_id', 'run_id'),
    )
