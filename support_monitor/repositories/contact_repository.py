"""
Contact persistence.

One row per (instance, counterpart address). Counters are only ever changed
with in-place SQL increments so concurrent writers cannot lose updates.
"""

from datetime import datetime
from typing import Any

from support_monitor.db.helpers import execute_query, fetch_all, fetch_one
from support_monitor.models.domain.analytics_domain import (
    Contact,
    ContactLastActivity,
    Direction,
)

_CONTACT_COLUMNS = """
    c.id, c.instance_id, c.address, c.name, c.first_seen_at, c.last_seen_at,
    c.messages_received, c.messages_sent, c.return_count
"""

_LAST_MESSAGE_COLUMNS = """
    last_msg.direction AS last_direction,
    last_msg.body AS last_body,
    last_msg.timestamp AS last_timestamp
"""

_LAST_MESSAGE_JOIN = """
    LEFT JOIN LATERAL (
        SELECT m.direction, m.body, m.timestamp
        FROM messages m
        WHERE m.contact_id = c.id
        ORDER BY m.timestamp DESC, m.id DESC
        LIMIT 1
    ) last_msg ON TRUE
"""


def contact_from_row(row: dict[str, Any]) -> Contact:
    return Contact(
        id=row["id"],
        instance_id=row["instance_id"],
        address=row["address"],
        name=row.get("name"),
        first_seen_at=row["first_seen_at"],
        last_seen_at=row["last_seen_at"],
        messages_received=row.get("messages_received") or 0,
        messages_sent=row.get("messages_sent") or 0,
        return_count=row.get("return_count") or 0,
    )


def _activity_from_row(row: dict[str, Any]) -> ContactLastActivity:
    last_direction = row.get("last_direction")
    return ContactLastActivity(
        contact=contact_from_row(row),
        last_direction=Direction(last_direction) if last_direction else None,
        last_body=row.get("last_body"),
        last_timestamp=row.get("last_timestamp"),
        inbound_total=row.get("messages_received") or 0,
    )


class ContactRepository:
    """Raw SQL access to the contacts table."""

    async def find_by_address(
        self, instance_id: str, address: str, *, connection=None
    ) -> Contact | None:
        row = await fetch_one(
            f"SELECT {_CONTACT_COLUMNS} FROM contacts c WHERE c.instance_id = %s AND c.address = %s",
            (instance_id, address),
            connection=connection,
        )
        return contact_from_row(row) if row else None

    async def find_by_id(self, contact_id: int) -> Contact | None:
        row = await fetch_one(
            f"SELECT {_CONTACT_COLUMNS} FROM contacts c WHERE c.id = %s", (contact_id,)
        )
        return contact_from_row(row) if row else None

    async def upsert(
        self,
        instance_id: str,
        address: str,
        name: str | None,
        first_seen_at: datetime,
        last_seen_at: datetime,
        *,
        connection=None,
    ) -> Contact:
        """
        Insert the contact or refresh an existing one.

        A NULL name never overwrites a stored one, and last_seen_at never
        moves backwards.
        """
        query = """
            INSERT INTO contacts AS c (instance_id, address, name, first_seen_at, last_seen_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, address) DO UPDATE SET
                name = COALESCE(EXCLUDED.name, c.name),
                last_seen_at = GREATEST(c.last_seen_at, EXCLUDED.last_seen_at),
                updated_at = NOW()
            RETURNING c.id, c.instance_id, c.address, c.name, c.first_seen_at, c.last_seen_at,
                      c.messages_received, c.messages_sent, c.return_count
        """
        row = await fetch_one(
            query, (instance_id, address, name, first_seen_at, last_seen_at), connection=connection
        )
        return contact_from_row(row)

    async def increment_sent(self, contact_id: int, *, connection=None) -> None:
        await execute_query(
            "UPDATE contacts SET messages_sent = messages_sent + 1 WHERE id = %s",
            (contact_id,),
            connection=connection,
        )

    async def increment_received(self, contact_id: int, *, connection=None) -> None:
        await execute_query(
            "UPDATE contacts SET messages_received = messages_received + 1 WHERE id = %s",
            (contact_id,),
            connection=connection,
        )

    async def increment_return(self, contact_id: int, *, connection=None) -> None:
        await execute_query(
            "UPDATE contacts SET return_count = return_count + 1 WHERE id = %s",
            (contact_id,),
            connection=connection,
        )

    async def find_recent(self, instance_id: str, limit: int) -> list[Contact]:
        rows = await fetch_all(
            f"""
            SELECT {_CONTACT_COLUMNS}
            FROM contacts c
            WHERE c.instance_id = %s
            ORDER BY c.last_seen_at DESC
            LIMIT %s
            """,
            (instance_id, limit),
        )
        return [contact_from_row(row) for row in rows]

    async def find_first_seen_between(
        self, instance_id: str, start: datetime, end: datetime
    ) -> list[Contact]:
        """Contacts whose first message falls in [start, end)."""
        rows = await fetch_all(
            f"""
            SELECT {_CONTACT_COLUMNS}
            FROM contacts c
            WHERE c.instance_id = %s
              AND c.first_seen_at >= %s
              AND c.first_seen_at < %s
            """,
            (instance_id, start, end),
        )
        return [contact_from_row(row) for row in rows]

    async def find_returning(self, instance_id: str, limit: int) -> list[ContactLastActivity]:
        rows = await fetch_all(
            f"""
            SELECT {_CONTACT_COLUMNS}, {_LAST_MESSAGE_COLUMNS}
            FROM contacts c
            {_LAST_MESSAGE_JOIN}
            WHERE c.instance_id = %s
              AND c.return_count > 0
            ORDER BY c.last_seen_at DESC
            LIMIT %s
            """,
            (instance_id, limit),
        )
        return [_activity_from_row(row) for row in rows]

    async def find_with_last_activity(
        self, instance_id: str, limit: int | None = None
    ) -> list[ContactLastActivity]:
        """Contacts with their latest message, most recently active first."""
        rows = await fetch_all(
            f"""
            SELECT {_CONTACT_COLUMNS}, {_LAST_MESSAGE_COLUMNS}
            FROM contacts c
            {_LAST_MESSAGE_JOIN}
            WHERE c.instance_id = %s
            ORDER BY c.last_seen_at DESC
            LIMIT %s
            """,
            (instance_id, limit),
        )
        return [_activity_from_row(row) for row in rows]
