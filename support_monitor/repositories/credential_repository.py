"""
Opaque per-session credential storage. Values arrive already encrypted.
"""

from support_monitor.db.helpers import execute_query, fetch_all


class CredentialRepository:
    """Raw SQL access to the session_credentials table."""

    async def get_all(self, session_id: str) -> dict[str, bytes]:
        rows = await fetch_all(
            "SELECT data_key, data_value FROM session_credentials WHERE session_id = %s",
            (session_id,),
        )
        return {row["data_key"]: bytes(row["data_value"]) for row in rows}

    async def set(self, session_id: str, data_key: str, data_value: bytes) -> None:
        await execute_query(
            """
            INSERT INTO session_credentials (session_id, data_key, data_value)
            VALUES (%s, %s, %s)
            ON CONFLICT (session_id, data_key) DO UPDATE SET
                data_value = EXCLUDED.data_value,
                updated_at = NOW()
            """,
            (session_id, data_key, data_value),
        )

    async def delete(self, session_id: str, data_key: str) -> None:
        await execute_query(
            "DELETE FROM session_credentials WHERE session_id = %s AND data_key = %s",
            (session_id, data_key),
        )

    async def delete_all(self, session_id: str) -> int:
        return await execute_query(
            "DELETE FROM session_credentials WHERE session_id = %s", (session_id,)
        )
