"""
Instance persistence. Status is written only by the session supervisor.
"""

from typing import Any

from support_monitor.db.helpers import execute_query, fetch_all, fetch_one
from support_monitor.models.domain.analytics_domain import Instance, InstanceStatus

_INSTANCE_COLUMNS = "id, tenant_id, session_id, name, address, status, created_at"


def _instance_from_row(row: dict[str, Any]) -> Instance:
    return Instance(
        id=row["id"],
        tenant_id=row["tenant_id"],
        session_id=row["session_id"],
        name=row["name"],
        address=row.get("address"),
        status=InstanceStatus(row["status"]),
        created_at=row.get("created_at"),
    )


class InstanceRepository:
    """Raw SQL access to the instances table."""

    async def create(self, instance: Instance) -> Instance:
        row = await fetch_one(
            f"""
            INSERT INTO instances (id, tenant_id, session_id, name, address, status)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {_INSTANCE_COLUMNS}
            """,
            (
                instance.id,
                instance.tenant_id,
                instance.session_id,
                instance.name,
                instance.address,
                instance.status.value,
            ),
        )
        return _instance_from_row(row)

    async def find_by_id(self, instance_id: str) -> Instance | None:
        row = await fetch_one(
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE id = %s", (instance_id,)
        )
        return _instance_from_row(row) if row else None

    async def find_by_session_id(self, session_id: str) -> Instance | None:
        row = await fetch_one(
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE session_id = %s", (session_id,)
        )
        return _instance_from_row(row) if row else None

    async def find_by_tenant(self, tenant_id: str) -> list[Instance]:
        rows = await fetch_all(
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE tenant_id = %s ORDER BY created_at",
            (tenant_id,),
        )
        return [_instance_from_row(row) for row in rows]

    async def find_by_status(self, statuses: list[InstanceStatus]) -> list[Instance]:
        rows = await fetch_all(
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE status = ANY(%s) ORDER BY created_at",
            ([status.value for status in statuses],),
        )
        return [_instance_from_row(row) for row in rows]

    async def update_status(
        self, session_id: str, status: InstanceStatus, address: str | None = None
    ) -> int:
        return await execute_query(
            """
            UPDATE instances
            SET status = %s, address = %s, updated_at = NOW()
            WHERE session_id = %s
            """,
            (status.value, address, session_id),
        )

    async def delete(self, instance_id: str) -> int:
        return await execute_query("DELETE FROM instances WHERE id = %s", (instance_id,))
