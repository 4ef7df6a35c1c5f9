from collections import defaultdict
from contextlib import asynccontextmanager
from copy import deepcopy
from dataclasses import replace
from datetime import UTC, datetime

import pytest
from cryptography.fernet import Fernet

from support_monitor.config import settings
from support_monitor.models.domain.analytics_domain import (
    Contact,
    ContactLastActivity,
    DailyMessageCount,
    DailyMetric,
    Direction,
    Instance,
    InstanceStatus,
    StoredMessage,
    TimedMessage,
)
from support_monitor.repositories.store import Store
from support_monitor.services.session.client import ClientConfig, SendReceipt


class FakeContacts:
    def __init__(self):
        self.rows: dict[int, Contact] = {}
        self._next_id = 1
        self.messages: "FakeMessages | None" = None

    async def find_by_address(self, instance_id, address, connection=None):
        for contact in self.rows.values():
            if contact.instance_id == instance_id and contact.address == address:
                return replace(contact)
        return None

    async def find_by_id(self, contact_id):
        contact = self.rows.get(contact_id)
        return replace(contact) if contact else None

    async def upsert(self, instance_id, address, name, first_seen_at, last_seen_at, connection=None):
        for contact in self.rows.values():
            if contact.instance_id == instance_id and contact.address == address:
                contact.name = name if name is not None else contact.name
                contact.last_seen_at = max(contact.last_seen_at, last_seen_at)
                return replace(contact)
        contact = Contact(
            id=self._next_id,
            instance_id=instance_id,
            address=address,
            name=name,
            first_seen_at=first_seen_at,
            last_seen_at=last_seen_at,
        )
        self.rows[contact.id] = contact
        self._next_id += 1
        return replace(contact)

    async def increment_sent(self, contact_id, connection=None):
        self.rows[contact_id].messages_sent += 1

    async def increment_received(self, contact_id, connection=None):
        self.rows[contact_id].messages_received += 1

    async def increment_return(self, contact_id, connection=None):
        self.rows[contact_id].return_count += 1

    def _for_instance(self, instance_id):
        contacts = [c for c in self.rows.values() if c.instance_id == instance_id]
        return sorted(contacts, key=lambda c: c.last_seen_at, reverse=True)

    async def find_recent(self, instance_id, limit):
        return [replace(c) for c in self._for_instance(instance_id)[:limit]]

    async def find_first_seen_between(self, instance_id, start, end):
        return [
            replace(c)
            for c in self.rows.values()
            if c.instance_id == instance_id and start <= c.first_seen_at < end
        ]

    def _activity(self, contact):
        history = self.messages.for_contact(contact.id)
        last = history[-1] if history else None
        return ContactLastActivity(
            contact=replace(contact),
            last_direction=last.direction if last else None,
            last_body=last.body if last else None,
            last_timestamp=last.timestamp if last else None,
            inbound_total=sum(1 for m in history if m.direction is Direction.INBOUND),
        )

    async def find_returning(self, instance_id, limit):
        contacts = [c for c in self._for_instance(instance_id) if c.return_count > 0]
        return [self._activity(c) for c in contacts[:limit]]

    async def find_with_last_activity(self, instance_id, limit=None):
        contacts = self._for_instance(instance_id)
        if limit is not None:
            contacts = contacts[:limit]
        return [self._activity(c) for c in contacts]


class FakeMessages:
    def __init__(self):
        self.rows: list[StoredMessage] = []

    async def create(self, instance_id, contact_id, message, connection=None):
        stored = StoredMessage(
            id=len(self.rows) + 1,
            instance_id=instance_id,
            contact_id=contact_id,
            network_message_id=message.network_message_id,
            direction=message.direction,
            body=message.body,
            content_kind=message.content_kind,
            timestamp=message.timestamp,
        )
        self.rows.append(stored)
        return stored.id

    async def exists(self, instance_id, network_message_id, connection=None):
        return any(
            m.instance_id == instance_id and m.network_message_id == network_message_id
            for m in self.rows
        )

    def for_contact(self, contact_id):
        return sorted(
            (m for m in self.rows if m.contact_id == contact_id), key=lambda m: (m.timestamp, m.id)
        )

    async def find_by_contact(self, contact_id):
        return self.for_contact(contact_id)

    async def find_by_direction_between(self, instance_id, direction, start, end):
        return [
            TimedMessage(m.contact_id, m.timestamp)
            for m in self.rows
            if m.instance_id == instance_id
            and m.direction is direction
            and start <= m.timestamp < end
        ]

    async def find_outbound_after(self, instance_id, contact_ids, since):
        return [
            TimedMessage(m.contact_id, m.timestamp)
            for m in self.rows
            if m.instance_id == instance_id
            and m.direction is Direction.OUTBOUND
            and m.contact_id in contact_ids
            and m.timestamp > since
        ]

    async def first_outbound_by_contact(self, contact_ids):
        first: dict[int, datetime] = {}
        for m in self.rows:
            if m.direction is Direction.OUTBOUND and m.contact_id in contact_ids:
                if m.contact_id not in first or m.timestamp < first[m.contact_id]:
                    first[m.contact_id] = m.timestamp
        return first

    async def count_by_date_range(self, instance_id, start, end):
        counts: dict = defaultdict(lambda: [0, 0])
        for m in self.rows:
            if m.instance_id == instance_id and start <= m.timestamp < end:
                day = m.timestamp.astimezone(UTC).date()
                counts[day][0 if m.direction is Direction.INBOUND else 1] += 1
        return [DailyMessageCount(day, received, sent) for day, (received, sent) in sorted(counts.items())]


class FakeDailyMetrics:
    def __init__(self):
        self.rows: dict[tuple, DailyMetric] = {}

    async def upsert_additive(
        self,
        instance_id,
        metric_date,
        *,
        new_contacts,
        messages_received,
        messages_sent,
        returning_contacts,
        connection=None,
    ):
        metric = self.rows.setdefault(
            (instance_id, metric_date), DailyMetric(instance_id=instance_id, metric_date=metric_date)
        )
        metric.new_contacts += new_contacts
        metric.messages_received += messages_received
        metric.messages_sent += messages_sent
        metric.returning_contacts += returning_contacts

    async def get_by_date_range(self, instance_id, start_date, end_date):
        return sorted(
            (
                replace(m)
                for (iid, day), m in self.rows.items()
                if iid == instance_id and start_date <= day <= end_date
            ),
            key=lambda m: m.metric_date,
        )


class FakeCredentials:
    def __init__(self):
        self.rows: dict[tuple[str, str], bytes] = {}

    async def get_all(self, session_id):
        return {key: value for (sid, key), value in self.rows.items() if sid == session_id}

    async def set(self, session_id, data_key, data_value):
        self.rows[(session_id, data_key)] = data_value

    async def delete(self, session_id, data_key):
        self.rows.pop((session_id, data_key), None)

    async def delete_all(self, session_id):
        keys = [k for k in self.rows if k[0] == session_id]
        for key in keys:
            del self.rows[key]
        return len(keys)


class FakeInstances:
    def __init__(self):
        self.rows: dict[str, Instance] = {}

    async def create(self, instance):
        self.rows[instance.id] = replace(instance, created_at=datetime.now(UTC))
        return replace(self.rows[instance.id])

    async def find_by_id(self, instance_id):
        instance = self.rows.get(instance_id)
        return replace(instance) if instance else None

    async def find_by_session_id(self, session_id):
        for instance in self.rows.values():
            if instance.session_id == session_id:
                return replace(instance)
        return None

    async def find_by_tenant(self, tenant_id):
        return [replace(i) for i in self.rows.values() if i.tenant_id == tenant_id]

    async def find_by_status(self, statuses):
        return [replace(i) for i in self.rows.values() if i.status in statuses]

    async def update_status(self, session_id, status, address=None):
        updated = 0
        for instance in self.rows.values():
            if instance.session_id == session_id:
                instance.status = status
                instance.address = address
                updated += 1
        return updated

    async def delete(self, instance_id):
        return 1 if self.rows.pop(instance_id, None) else 0


def fake_transaction(contacts: FakeContacts, messages: FakeMessages, daily_metrics: FakeDailyMetrics):
    """Snapshot the analytics tables and restore them if the block raises."""

    @asynccontextmanager
    async def transaction():
        saved_contacts = deepcopy(contacts.rows)
        saved_next_id = contacts._next_id
        saved_messages = list(messages.rows)
        saved_metrics = deepcopy(daily_metrics.rows)
        try:
            yield "fake-connection"
        except BaseException:
            contacts.rows.clear()
            contacts.rows.update(saved_contacts)
            contacts._next_id = saved_next_id
            messages.rows[:] = saved_messages
            daily_metrics.rows.clear()
            daily_metrics.rows.update(saved_metrics)
            raise

    return transaction


def build_fake_store() -> Store:
    contacts = FakeContacts()
    messages = FakeMessages()
    daily_metrics = FakeDailyMetrics()
    contacts.messages = messages
    return Store(
        contacts=contacts,
        messages=messages,
        daily_metrics=daily_metrics,
        credentials=FakeCredentials(),
        instances=FakeInstances(),
        transaction=fake_transaction(contacts, messages, daily_metrics),
    )


@pytest.fixture
def fake_store():
    return build_fake_store()


@pytest.fixture
def encryption_key(monkeypatch):
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", key)
    return key


@pytest.fixture
def instance(fake_store):
    record = Instance(
        id="inst_test",
        tenant_id="tenant-1",
        session_id="session_tenant-1_test",
        name="Front desk",
        address=None,
        status=InstanceStatus.DISCONNECTED,
    )
    fake_store.instances.rows[record.id] = record
    return record


class FakeHandle:
    def __init__(self, config: ClientConfig, user_id: str | None = None):
        self.config = config
        self.user_id = user_id
        self.sent: list[tuple[str, str]] = []
        self.closed = False
        self.fail_send = False

    def emit(self, event) -> None:
        self.config.emit(event)

    async def send(self, address, text):
        if self.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append((address, text))
        return SendReceipt(message_id=f"out-{len(self.sent)}", timestamp=datetime.now(UTC))

    async def close(self):
        self.closed = True


class FakeClientFactory:
    def __init__(self):
        self.handles: list[FakeHandle] = []
        self.configs: list[ClientConfig] = []
        self.fail = False

    async def open(self, config: ClientConfig):
        self.configs.append(config)
        if self.fail:
            raise RuntimeError("adapter unavailable")
        handle = FakeHandle(config)
        self.handles.append(handle)
        return handle

    @property
    def latest(self) -> FakeHandle:
        return self.handles[-1]


@pytest.fixture
def client_factory():
    return FakeClientFactory()
