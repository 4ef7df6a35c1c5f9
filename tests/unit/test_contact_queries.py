from datetime import UTC, datetime, timedelta

import pytest

from support_monitor.models.domain.analytics_domain import Direction, IncomingMessage
from support_monitor.services.analytics_service import AnalyticsService

T0 = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
INSTANCE = "inst_a"


def message(direction, body, at, name=None):
    return IncomingMessage(direction=direction, body=body, timestamp=at, sender_name=name)


async def ingest_all(service, entries):
    for address, direction, body, at in entries:
        await service.ingest(INSTANCE, address, message(direction, body, at))


@pytest.mark.asyncio
async def test_returning_contacts_lists_only_returners_latest_first(fake_store):
    service = AnalyticsService(fake_store)
    await ingest_all(
        service,
        [
            ("100", Direction.INBOUND, "hi", T0),
            ("200", Direction.INBOUND, "hello", T0),
            ("300", Direction.INBOUND, "hey", T0),
            # 200 only chats within the day, never returns
            ("200", Direction.INBOUND, "still there?", T0 + timedelta(hours=3)),
            ("100", Direction.INBOUND, "back", T0 + timedelta(hours=30)),
            ("100", Direction.OUTBOUND, "welcome back", T0 + timedelta(hours=30, minutes=5)),
            ("300", Direction.INBOUND, "me again", T0 + timedelta(hours=50)),
        ],
    )

    returning = await service.get_returning_contacts(INSTANCE)

    assert [c.address for c in returning] == ["300", "100"]
    assert all(c.return_count > 0 for c in returning)
    latest = returning[1]
    assert latest.last_message == "welcome back"
    assert latest.last_message_timestamp == T0 + timedelta(hours=30, minutes=5)
    assert latest.messages_received == 2
    assert latest.messages_sent == 1
    assert returning[0].last_message == "me again"


@pytest.mark.asyncio
async def test_conversation_is_oldest_first(fake_store):
    service = AnalyticsService(fake_store)
    late = await service.ingest(
        INSTANCE, "100", message(Direction.INBOUND, "second", T0 + timedelta(minutes=10))
    )
    await service.ingest(INSTANCE, "100", message(Direction.OUTBOUND, "third", T0 + timedelta(minutes=20)))
    await service.ingest(INSTANCE, "100", message(Direction.INBOUND, "first", T0))

    conversation = await service.get_conversation(late.contact.id)

    assert [m.body for m in conversation] == ["first", "second", "third"]
    assert [m.from_me for m in conversation] == [False, False, True]
    assert conversation == sorted(conversation, key=lambda m: m.timestamp)


@pytest.mark.asyncio
async def test_active_contacts_are_most_recent_first_and_limited(fake_store):
    service = AnalyticsService(fake_store)
    await ingest_all(
        service,
        [
            ("100", Direction.INBOUND, "a", T0),
            ("200", Direction.INBOUND, "b", T0 + timedelta(minutes=5)),
            ("300", Direction.INBOUND, "c", T0 + timedelta(minutes=10)),
            ("100", Direction.OUTBOUND, "reply a", T0 + timedelta(minutes=15)),
            ("100", Direction.INBOUND, "thanks", T0 + timedelta(minutes=20)),
        ],
    )

    everyone = await service.get_active_contacts(INSTANCE)
    top_two = await service.get_active_contacts(INSTANCE, limit=2)

    assert [c.address for c in everyone] == ["100", "300", "200"]
    assert [c.address for c in top_two] == ["100", "300"]
    first = everyone[0]
    assert first.messages_received == 2
    assert first.messages_sent == 1
    assert first.first_message_at == T0
    assert first.last_message_at == T0 + timedelta(minutes=20)
    assert (everyone[2].messages_received, everyone[2].messages_sent) == (1, 0)
