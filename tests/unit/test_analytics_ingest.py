from datetime import UTC, date, datetime, timedelta

import pytest

from support_monitor.models.domain.analytics_domain import Direction, IncomingMessage
from support_monitor.services.analytics_service import AnalyticsService, PersistenceError

T0 = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
INSTANCE = "inst_a"
ADDRESS = "5511999990000"


def inbound(body, at, message_id=None, name="Maria"):
    return IncomingMessage(
        direction=Direction.INBOUND, body=body, timestamp=at, network_message_id=message_id, sender_name=name
    )


def outbound(body, at, message_id=None):
    return IncomingMessage(
        direction=Direction.OUTBOUND, body=body, timestamp=at, network_message_id=message_id
    )


@pytest.mark.asyncio
async def test_new_reply_and_returning_contact_scenario(fake_store):
    service = AnalyticsService(fake_store)

    first = await service.ingest(INSTANCE, ADDRESS, inbound("hi", T0, "m1"))
    assert first.is_new_contact is True
    assert first.is_returning_contact is False
    assert first.contact.messages_received == 1

    day_one = fake_store.daily_metrics.rows[(INSTANCE, T0.date())]
    assert day_one.new_contacts == 1
    assert day_one.messages_received == 1

    reply = await service.ingest(INSTANCE, ADDRESS, outbound("hello", T0 + timedelta(seconds=30), "m2"))
    assert reply.is_new_contact is False
    assert day_one.messages_sent == 1

    stats = await service.calculate_response_times(INSTANCE, T0.date(), T0.date())
    assert stats.total_responses == 1
    assert stats.avg_response_time_seconds == 30

    later = T0 + timedelta(hours=25)
    again = await service.ingest(INSTANCE, ADDRESS, inbound("hi again", later, "m3"))
    assert again.is_returning_contact is True
    assert again.contact.return_count == 1

    day_two = fake_store.daily_metrics.rows[(INSTANCE, later.date())]
    assert day_two.returning_contacts == 1
    assert day_two.messages_received == 1
    assert day_two.new_contacts == 0


@pytest.mark.asyncio
async def test_outbound_after_long_gap_is_not_a_return(fake_store):
    service = AnalyticsService(fake_store)
    await service.ingest(INSTANCE, ADDRESS, inbound("hi", T0))

    result = await service.ingest(INSTANCE, ADDRESS, outbound("still there?", T0 + timedelta(days=3)))

    assert result.is_returning_contact is False
    assert result.contact.return_count == 0


@pytest.mark.asyncio
async def test_return_count_increments_once_per_gap(fake_store):
    service = AnalyticsService(fake_store)
    timeline = [
        (T0, 0),
        (T0 + timedelta(hours=2), 0),
        (T0 + timedelta(hours=26), 1),
        (T0 + timedelta(hours=27), 1),
        (T0 + timedelta(hours=51), 2),
    ]

    previous = 0
    for at, expected in timeline:
        result = await service.ingest(INSTANCE, ADDRESS, inbound("ping", at))
        assert result.contact.return_count == expected
        assert result.contact.return_count >= previous
        previous = result.contact.return_count


@pytest.mark.asyncio
async def test_same_address_never_creates_two_contacts(fake_store):
    service = AnalyticsService(fake_store)
    await service.ingest(INSTANCE, ADDRESS, inbound("one", T0))
    await service.ingest(INSTANCE, ADDRESS, outbound("two", T0 + timedelta(minutes=1)))
    await service.ingest(INSTANCE, ADDRESS, inbound("three", T0 + timedelta(minutes=2)))
    await service.ingest("inst_b", ADDRESS, inbound("other instance", T0))

    rows = [c for c in fake_store.contacts.rows.values() if c.instance_id == INSTANCE]
    assert len(rows) == 1
    assert rows[0].messages_received == 2
    assert rows[0].messages_sent == 1
    assert len(fake_store.contacts.rows) == 2


@pytest.mark.asyncio
async def test_daily_rollup_matches_message_rows(fake_store):
    service = AnalyticsService(fake_store)
    addresses = ["100", "200", "300"]
    for index in range(12):
        at = T0 + timedelta(hours=7 * index)
        address = addresses[index % len(addresses)]
        message = inbound("q", at) if index % 3 else outbound("a", at)
        await service.ingest(INSTANCE, address, message)

    for (instance_id, day), metric in fake_store.daily_metrics.rows.items():
        on_day = [
            m for m in fake_store.messages.rows
            if m.instance_id == instance_id and m.timestamp.date() == day
        ]
        assert metric.messages_received == sum(1 for m in on_day if m.direction is Direction.INBOUND)
        assert metric.messages_sent == sum(1 for m in on_day if m.direction is Direction.OUTBOUND)

    assert sum(m.new_contacts for m in fake_store.daily_metrics.rows.values()) == len(addresses)


@pytest.mark.asyncio
async def test_duplicate_network_id_is_acknowledged_without_changes(fake_store):
    service = AnalyticsService(fake_store)
    await service.ingest(INSTANCE, ADDRESS, inbound("hi", T0, "dup-1"))

    result = await service.ingest(INSTANCE, ADDRESS, inbound("hi", T0, "dup-1"))

    assert result.is_duplicate is True
    assert result.contact.messages_received == 1
    assert len(fake_store.messages.rows) == 1
    assert fake_store.daily_metrics.rows[(INSTANCE, T0.date())].messages_received == 1


@pytest.mark.asyncio
async def test_outbound_first_contact_has_no_name(fake_store):
    service = AnalyticsService(fake_store)
    result = await service.ingest(INSTANCE, ADDRESS, outbound("welcome", T0))

    assert result.is_new_contact is True
    assert result.contact.name is None
    assert result.contact.messages_sent == 1

    named = await service.ingest(INSTANCE, ADDRESS, inbound("thanks", T0 + timedelta(minutes=1)))
    assert named.contact.name == "Maria"


@pytest.mark.asyncio
async def test_store_failure_raises_persistence_error(fake_store, monkeypatch):
    service = AnalyticsService(fake_store)

    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(fake_store.messages, "create", broken)

    with pytest.raises(PersistenceError) as exc_info:
        await service.ingest(INSTANCE, ADDRESS, inbound("hi", T0))

    assert exc_info.value.instance_id == INSTANCE
    assert exc_info.value.address == ADDRESS


@pytest.mark.asyncio
async def test_failed_ingest_leaves_no_partial_writes(fake_store, monkeypatch):
    service = AnalyticsService(fake_store)
    await service.ingest(INSTANCE, ADDRESS, inbound("hi", T0, "m1"))
    original_create = fake_store.messages.create

    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(fake_store.messages, "create", broken)
    later = T0 + timedelta(hours=25)

    with pytest.raises(PersistenceError):
        await service.ingest(INSTANCE, ADDRESS, inbound("back again", later, "m2"))

    contact = await fake_store.contacts.find_by_address(INSTANCE, ADDRESS)
    assert contact.return_count == 0
    assert contact.last_seen_at == T0
    assert contact.messages_received == 1
    rollup = {m.metric_date: m for m in fake_store.daily_metrics.rows.values()}
    assert later.date() not in rollup
    assert rollup[T0.date()].messages_received == 1

    # the redelivery is still seen as a return
    monkeypatch.setattr(fake_store.messages, "create", original_create)
    retried = await service.ingest(INSTANCE, ADDRESS, inbound("back again", later, "m2"))

    assert retried.is_duplicate is False
    assert retried.is_returning_contact is True
    assert retried.contact.return_count == 1


@pytest.mark.asyncio
async def test_dashboard_metrics_sums_range(fake_store):
    service = AnalyticsService(fake_store)
    await service.ingest(INSTANCE, "100", inbound("hi", T0))
    await service.ingest(INSTANCE, "100", outbound("hello", T0 + timedelta(minutes=2)))
    await service.ingest(INSTANCE, "200", inbound("question", T0 + timedelta(days=1)))

    snapshot = await service.dashboard_metrics(INSTANCE, T0.date() + timedelta(days=1), T0.date())

    assert snapshot.period.start == T0.date()
    assert snapshot.period.end == date(2026, 3, 11)
    assert snapshot.totals.new_contacts == 2
    assert snapshot.totals.messages_received == 2
    assert snapshot.totals.messages_sent == 1
    assert snapshot.active_contacts == 2
    assert snapshot.pending_contacts == 1
    assert [entry.day for entry in snapshot.daily_breakdown] == [date(2026, 3, 10), date(2026, 3, 11)]
    assert snapshot.response_times.total_responses == 1
    assert snapshot.response_times.avg_response_time_seconds == 120


@pytest.mark.asyncio
async def test_read_paths_degrade_on_store_failure(fake_store, monkeypatch):
    service = AnalyticsService(fake_store)

    async def broken(*args, **kwargs):
        raise RuntimeError("pool exhausted")

    monkeypatch.setattr(fake_store.contacts, "find_recent", broken)
    monkeypatch.setattr(fake_store.contacts, "find_with_last_activity", broken)
    monkeypatch.setattr(fake_store.messages, "find_by_contact", broken)

    assert await service.get_active_contacts(INSTANCE) == []
    assert await service.get_pending_contacts(INSTANCE) == []
    assert await service.get_contacts_with_preview(INSTANCE) == []
    assert await service.get_conversation(1) == []
