"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_connections (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            provider TEXT NOT NULL
                CHECK (provider IN ('google', 'apple', 'notion')),
            is_connected BOOLEAN NOT NULL DEFAULT false,
            sync_direction TEXT NOT NULL DEFAULT 'bidirectional'
                CHECK (sync_direction IN ('none', 'pull', 'push', 'bidirectional')),
            access_token TEXT,
            refresh_token TEXT,
            caldav_url TEXT,
            caldav_username TEXT,
            caldav_password TEXT,
            notion_database_id TEXT,
            notion_access_token TEXT,
            calendar_id TEXT,
            calendar_name TEXT,
            color TEXT,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_connections_user
        ON calendar_connections (user_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            connection_id BIGINT REFERENCES calendar_connections (id) ON DELETE SET NULL,
            google_event_id TEXT,
            caldav_uid TEXT,
            notion_page_id TEXT,
            title TEXT NOT NULL CHECK (length(btrim(title)) > 0),
            description TEXT,
            location TEXT,
            start_time BIGINT NOT NULL,
            end_time BIGINT NOT NULL,
            is_all_day BOOLEAN NOT NULL DEFAULT false,
            recurrence_rule TEXT,
            source TEXT NOT NULL DEFAULT 'local'
                CHECK (source IN ('local', 'google', 'apple', 'notion')),
            sync_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (sync_status IN ('pending', 'synced', 'error')),
            last_sync_error TEXT,
            color TEXT NOT NULL DEFAULT '#007AFF',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (
                (source <> 'google' OR google_event_id IS NOT NULL)
                AND (source <> 'apple' OR caldav_uid IS NOT NULL)
                AND (source <> 'notion' OR notion_page_id IS NOT NULL)
            )
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_user_window
        ON events (user_id, start_time, end_time)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_user_status
        ON events (user_id, source, sync_status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_google_event_id
        ON events (user_id, google_event_id) WHERE google_event_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_caldav_uid
        ON events (user_id, caldav_uid) WHERE caldav_uid IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_notion_page_id
        ON events (user_id, notion_page_id) WHERE notion_page_id IS NOT NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_logs (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            connection_id BIGINT NOT NULL
                REFERENCES calendar_connections (id) ON DELETE CASCADE,
            action TEXT NOT NULL
                CHECK (action IN ('pull', 'push', 'bidirectional', 'conflict_resolved')),
            events_processed INTEGER NOT NULL DEFAULT 0,
            events_created INTEGER NOT NULL DEFAULT 0,
            events_updated INTEGER NOT NULL DEFAULT 0,
            events_deleted INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'success'
                CHECK (status IN ('success', 'partial', 'failed')),
            error_message TEXT,
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_logs_connection_started
        ON sync_logs (connection_id, started_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_logs")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS calendar_connections")
