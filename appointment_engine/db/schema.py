"""
Database Schema

DDL for the scheduling tables. Instants are stored as TIMESTAMPTZ in UTC.
The partial unique index keeps two Confirmed appointments off the same
interval even when concurrent requests race past the availability check.
"""

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant_policies (
        tenant_id TEXT PRIMARY KEY,
        timezone TEXT NOT NULL,
        work_days TEXT NOT NULL,
        work_start TEXT NOT NULL,
        work_end TEXT NOT NULL,
        slot_granularity_minutes INTEGER NOT NULL,
        calendar_id TEXT NOT NULL DEFAULT 'primary',
        default_duration_minutes INTEGER NOT NULL DEFAULT 60
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS appointments (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant_policies (tenant_id),
        client_ref TEXT NOT NULL,
        service_descriptor TEXT,
        start_at TIMESTAMPTZ NOT NULL,
        end_at TIMESTAMPTZ NOT NULL,
        duration_minutes INTEGER NOT NULL,
        status TEXT NOT NULL,
        external_event_ref TEXT,
        notes TEXT NOT NULL DEFAULT '',
        location TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CHECK (end_at > start_at)
    )
    """,
    """
    ALTER TABLE appointments ADD COLUMN IF NOT EXISTS location TEXT
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_appointments_tenant_start
        ON appointments (tenant_id, start_at)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_appointments_confirmed_interval
        ON appointments (tenant_id, start_at, end_at)
        WHERE status = 'Confirmed'
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_blocks (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant_policies (tenant_id),
        start_at TIMESTAMPTZ NOT NULL,
        end_at TIMESTAMPTZ NOT NULL,
        block_type TEXT NOT NULL,
        reason TEXT,
        status TEXT NOT NULL,
        external_event_ref TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CHECK (end_at > start_at)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_calendar_blocks_tenant_start
        ON calendar_blocks (tenant_id, start_at)
    """,
)
