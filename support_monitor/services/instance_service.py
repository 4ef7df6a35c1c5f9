"""
Instance management: one instance per monitored business number.
"""

import uuid

from support_monitor.infrastructure.observability.logging import get_logger
from support_monitor.models.domain.analytics_domain import Instance, InstanceStatus, InstanceView
from support_monitor.repositories.store import Store, store as default_store
from support_monitor.services.session.supervisor import SessionSupervisor

logger = get_logger(__name__)


def _new_ids(tenant_id: str) -> tuple[str, str]:
    suffix = uuid.uuid4().hex[:12]
    return f"inst_{suffix}", f"session_{tenant_id}_{suffix}"


class InstanceService:
    def __init__(self, supervisor: SessionSupervisor | None = None, store: Store | None = None):
        self._supervisor = supervisor
        self._store = store or default_store

    async def create_instance(self, tenant_id: str, name: str) -> Instance:
        tenant_id = (tenant_id or "").strip()
        name = (name or "").strip()
        if not tenant_id or not name:
            raise ValueError("tenant_id and name are required")

        instance_id, session_id = _new_ids(tenant_id)
        instance = await self._store.instances.create(
            Instance(
                id=instance_id,
                tenant_id=tenant_id,
                session_id=session_id,
                name=name,
                address=None,
                status=InstanceStatus.DISCONNECTED,
            )
        )
        logger.info(
            "Instance created", instance_id=instance.id, tenant_id=tenant_id, session_id=session_id
        )
        return instance

    async def list_instances(self, tenant_id: str) -> list[InstanceView]:
        instances = await self._store.instances.find_by_tenant(tenant_id)
        views = []
        for instance in instances:
            state = None
            is_ready = False
            if self._supervisor is not None:
                state = self._supervisor.get_session_state(instance.session_id)
                session = self._supervisor.registry.get(instance.session_id)
                is_ready = bool(session and session.is_ready)
            views.append(
                InstanceView(
                    id=instance.id,
                    tenant_id=instance.tenant_id,
                    session_id=instance.session_id,
                    name=instance.name,
                    address=instance.address,
                    status=instance.status,
                    session_state=state.value if state else None,
                    is_ready=is_ready,
                    created_at=instance.created_at,
                )
            )
        return views

    async def delete_instance(self, instance_id: str) -> bool:
        """Tear down the session, then delete the row; analytics rows cascade."""
        instance = await self._store.instances.find_by_id(instance_id)
        if instance is None:
            return False

        if self._supervisor is not None:
            await self._supervisor.remove(instance.session_id)
        else:
            await self._store.credentials.delete_all(instance.session_id)

        await self._store.instances.delete(instance.id)
        logger.info("Instance deleted", instance_id=instance.id, session_id=instance.session_id)
        return True
