"""
Message persistence. Rows are append-only.
"""

from datetime import datetime
from typing import Any

from support_monitor.db.helpers import fetch_all, fetch_one, fetch_val
from support_monitor.models.domain.analytics_domain import (
    DailyMessageCount,
    Direction,
    IncomingMessage,
    StoredMessage,
    TimedMessage,
)


def _message_from_row(row: dict[str, Any]) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        instance_id=row["instance_id"],
        contact_id=row["contact_id"],
        network_message_id=row.get("network_message_id"),
        direction=Direction(row["direction"]),
        body=row.get("body"),
        content_kind=row.get("content_kind") or "text",
        timestamp=row["timestamp"],
        received_at=row.get("received_at"),
    )


class MessageRepository:
    """Raw SQL access to the messages table."""

    async def create(
        self, instance_id: str, contact_id: int, message: IncomingMessage, *, connection=None
    ) -> int:
        row = await fetch_one(
            """
            INSERT INTO messages (
                instance_id, contact_id, network_message_id, direction,
                body, content_kind, timestamp
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                instance_id,
                contact_id,
                message.network_message_id,
                message.direction.value,
                message.body,
                message.content_kind,
                message.timestamp,
            ),
            connection=connection,
        )
        return row["id"]

    async def exists(self, instance_id: str, network_message_id: str, *, connection=None) -> bool:
        found = await fetch_val(
            """
            SELECT EXISTS (
                SELECT 1 FROM messages WHERE instance_id = %s AND network_message_id = %s
            )
            """,
            (instance_id, network_message_id),
            connection=connection,
        )
        return bool(found)

    async def find_by_contact(self, contact_id: int) -> list[StoredMessage]:
        rows = await fetch_all(
            """
            SELECT id, instance_id, contact_id, network_message_id, direction,
                   body, content_kind, timestamp, received_at
            FROM messages
            WHERE contact_id = %s
            ORDER BY timestamp ASC, id ASC
            """,
            (contact_id,),
        )
        return [_message_from_row(row) for row in rows]

    async def find_by_direction_between(
        self, instance_id: str, direction: Direction, start: datetime, end: datetime
    ) -> list[TimedMessage]:
        rows = await fetch_all(
            """
            SELECT contact_id, timestamp
            FROM messages
            WHERE instance_id = %s
              AND direction = %s
              AND timestamp >= %s
              AND timestamp < %s
            ORDER BY timestamp ASC
            """,
            (instance_id, direction.value, start, end),
        )
        return [TimedMessage(contact_id=row["contact_id"], timestamp=row["timestamp"]) for row in rows]

    async def find_outbound_after(
        self, instance_id: str, contact_ids: list[int], since: datetime
    ) -> list[TimedMessage]:
        """Outbound messages to the given contacts strictly after `since`."""
        if not contact_ids:
            return []
        rows = await fetch_all(
            """
            SELECT contact_id, timestamp
            FROM messages
            WHERE instance_id = %s
              AND direction = 'outbound'
              AND contact_id = ANY(%s)
              AND timestamp > %s
            ORDER BY timestamp ASC
            """,
            (instance_id, contact_ids, since),
        )
        return [TimedMessage(contact_id=row["contact_id"], timestamp=row["timestamp"]) for row in rows]

    async def first_outbound_by_contact(self, contact_ids: list[int]) -> dict[int, datetime]:
        if not contact_ids:
            return {}
        rows = await fetch_all(
            """
            SELECT contact_id, MIN(timestamp) AS first_outbound_at
            FROM messages
            WHERE direction = 'outbound'
              AND contact_id = ANY(%s)
            GROUP BY contact_id
            """,
            (contact_ids,),
        )
        return {row["contact_id"]: row["first_outbound_at"] for row in rows}

    async def count_by_date_range(
        self, instance_id: str, start: datetime, end: datetime
    ) -> list[DailyMessageCount]:
        rows = await fetch_all(
            """
            SELECT (timestamp AT TIME ZONE 'UTC')::date AS day,
                   COUNT(*) FILTER (WHERE direction = 'inbound') AS received,
                   COUNT(*) FILTER (WHERE direction = 'outbound') AS sent
            FROM messages
            WHERE instance_id = %s AND timestamp >= %s AND timestamp < %s
            GROUP BY day
            ORDER BY day ASC
            """,
            (instance_id, start, end),
        )
        return [
            DailyMessageCount(day=row["day"], received=row["received"], sent=row["sent"])
            for row in rows
        ]
