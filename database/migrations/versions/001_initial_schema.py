"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create connections table
    op.execute("""
        CREATE TABLE IF NOT EXISTS connections (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            kind VARCHAR(20) NOT NULL,
            account_email VARCHAR(255),
            access_token TEXT,
            refresh_token TEXT,
            token_expiry TIMESTAMP,
            folder_id VARCHAR(255) NOT NULL DEFAULT 'root',
            folder_name VARCHAR(255),
            include_subfolders BOOLEAN DEFAULT TRUE,
            calendar_id VARCHAR(255),
            calendar_name VARCHAR(255),
            time_zone VARCHAR(64) NOT NULL DEFAULT 'UTC',
            auto_sync BOOLEAN DEFAULT FALSE,
            sync_frequency VARCHAR(20) NOT NULL DEFAULT 'manual',
            next_sync_at TIMESTAMP,
            status VARCHAR(20) NOT NULL DEFAULT 'connected',
            total_items INTEGER DEFAULT 0,
            synced_items INTEGER DEFAULT 0,
            failed_items INTEGER DEFAULT 0,
            last_sync_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_connections_user_kind
        ON connections(user_id, kind)
    """)

    # Create documents table
    op.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            title VARCHAR(512) NOT NULL,
            category VARCHAR(50) NOT NULL DEFAULT 'other',
            status VARCHAR(20) NOT NULL DEFAULT 'uploaded',
            source VARCHAR(20) NOT NULL DEFAULT 'upload',
            file_url TEXT,
            file_size BIGINT DEFAULT 0,
            mime_type VARCHAR(255),
            end_date TIMESTAMP,
            uploaded_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_documents_user
        ON documents(user_id)
    """)

    # Create events table
    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            document_id UUID REFERENCES documents(id),
            title VARCHAR(512) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            event_date TIMESTAMP NOT NULL,
            priority VARCHAR(20) NOT NULL DEFAULT 'medium',
            status VARCHAR(20) NOT NULL DEFAULT 'upcoming',
            source VARCHAR(20) NOT NULL DEFAULT 'app',
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_user_date
        ON events(user_id, event_date)
    """)

    # Create mirror_records table
    op.execute("""
        CREATE TABLE IF NOT EXISTS mirror_records (
            id SERIAL PRIMARY KEY,
            connection_id UUID NOT NULL REFERENCES connections(id),
            remote_item_id VARCHAR(255) NOT NULL,
            remote_name VARCHAR(512),
            content_type VARCHAR(255),
            size BIGINT,
            remote_created_at TIMESTAMP,
            remote_modified_at TIMESTAMP,
            sync_status VARCHAR(20) NOT NULL DEFAULT 'pending',
            sync_direction VARCHAR(10) NOT NULL DEFAULT 'pull',
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            document_id UUID REFERENCES documents(id),
            event_id UUID REFERENCES events(id),
            last_sync_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_mirror_records_connection_item
        ON mirror_records(connection_id, remote_item_id)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_mirror_records_connection_status
        ON mirror_records(connection_id, sync_status)
    """)

    # Create notifications table
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            type VARCHAR(20) NOT NULL,
            title VARCHAR(255) NOT NULL,
            message TEXT NOT NULL,
            document_id UUID,
            event_id UUID,
            task_id VARCHAR(255),
            actions JSON,
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            read_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_user_created
        ON notifications(user_id, created_at DESC)
    """)

    # Create sync_runs table
    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_runs (
            run_id UUID PRIMARY KEY,
            connection_id UUID NOT NULL REFERENCES connections(id),
            user_id VARCHAR(255) NOT NULL,
            direction VARCHAR(20) NOT NULL DEFAULT 'pull',
            status VARCHAR(20) NOT NULL,
            processed INTEGER DEFAULT 0,
            succeeded INTEGER DEFAULT 0,
            failed INTEGER DEFAULT 0,
            error_message TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMP
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_runs_connection_created
        ON sync_runs(connection_id, created_at DESC)
    """)

    # Create sync_logs table
    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_logs (
            id SERIAL PRIMARY KEY,
            run_id UUID NOT NULL REFERENCES sync_runs(run_id) ON DELETE CASCADE,
            remote_item_id VARCHAR(255),
            level VARCHAR(20) NOT NULL,
            message TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_logs_run_id
        ON sync_logs(run_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS sync_runs CASCADE")
    op.execute("DROP TABLE IF EXISTS notifications CASCADE")
    op.execute("DROP TABLE IF EXISTS mirror_records CASCADE")
    op.execute("DROP TABLE IF EXISTS events CASCADE")
    op.execute("DROP TABLE IF EXISTS documents CASCADE")
    op.execute("DROP TABLE IF EXISTS connections CASCADE")
