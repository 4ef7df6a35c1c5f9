# support_monitor/db/schema.py
"""
Idempotent schema bootstrap, run once from the application lifespan.
"""

from support_monitor.db.helpers import execute_transaction
from support_monitor.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS instances (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        session_id TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        address TEXT,
        status TEXT NOT NULL DEFAULT 'disconnected',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id BIGSERIAL PRIMARY KEY,
        instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
        address TEXT NOT NULL,
        name TEXT,
        first_seen_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        messages_received INTEGER NOT NULL DEFAULT 0,
        messages_sent INTEGER NOT NULL DEFAULT 0,
        return_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (instance_id, address)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id BIGSERIAL PRIMARY KEY,
        instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
        contact_id BIGINT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
        network_message_id TEXT,
        direction TEXT NOT NULL CHECK (direction IN ('inbound', 'outbound')),
        body TEXT,
        content_kind TEXT NOT NULL DEFAULT 'text',
        timestamp TIMESTAMPTZ NOT NULL,
        received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_metrics (
        id BIGSERIAL PRIMARY KEY,
        instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
        metric_date DATE NOT NULL,
        new_contacts INTEGER NOT NULL DEFAULT 0,
        messages_received INTEGER NOT NULL DEFAULT 0,
        messages_sent INTEGER NOT NULL DEFAULT 0,
        returning_contacts INTEGER NOT NULL DEFAULT 0,
        UNIQUE (instance_id, metric_date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_credentials (
        session_id TEXT NOT NULL,
        data_key TEXT NOT NULL,
        data_value BYTEA NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (session_id, data_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_instances_tenant ON instances(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_contacts_instance_last_seen ON contacts(instance_id, last_seen_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_contact_timestamp ON messages(contact_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_messages_instance_timestamp ON messages(instance_id, timestamp)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_network_id
        ON messages(instance_id, network_message_id)
        WHERE network_message_id IS NOT NULL
    """,
]


async def initialize_schema() -> None:
    """Create tables and indexes if they do not exist yet."""
    logger.info("Ensuring database schema", statement_count=len(SCHEMA_STATEMENTS))
    await execute_transaction([(statement, ()) for statement in SCHEMA_STATEMENTS])
    logger.info("Database schema ready")
