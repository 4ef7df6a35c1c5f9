"""
Analytics Service for support-quality metrics.

Turns the live message stream into contact records and daily rollups, and
answers the dashboard read queries: response times, time to first response,
pending/active/returning contacts and full conversations.
"""

import math
from bisect import bisect_right
from collections import defaultdict
from datetime import UTC, date, datetime, time, timedelta

from support_monitor.config import settings
from support_monitor.infrastructure.observability.logging import get_logger
from support_monitor.models.domain.analytics_domain import (
    ActiveContactView,
    ContactPreview,
    ContactSummary,
    ConversationMessage,
    DailyBreakdownEntry,
    DashboardPeriod,
    DashboardSnapshot,
    DashboardTotals,
    DayCount,
    Direction,
    IncomingMessage,
    IngestResult,
    InstanceSummary,
    InstanceTodayMetrics,
    MetricTotals,
    PendingContactView,
    ResponseTimeStats,
    ReturningContactView,
    TimedMessage,
)
from support_monitor.repositories.store import Store, store as default_store

logger = get_logger(__name__)


class PersistenceError(Exception):
    """Raised when a store write fails while ingesting a message."""

    def __init__(self, message: str, instance_id: str | None = None, address: str | None = None):
        super().__init__(message)
        self.instance_id = instance_id
        self.address = address


def _round_seconds(value: float) -> int:
    """Round half up, so 0.5s reports as 1s."""
    return int(math.floor(value + 0.5))


def format_duration(seconds: float) -> str:
    """
    Human readable duration.

    Examples:
        42 -> "42s", 300 -> "5min", 7800 -> "2h 10min"
    """
    total = max(0, _round_seconds(seconds))
    if total < 60:
        return f"{total}s"

    minutes = _round_seconds(total / 60)
    if total < 3600 and minutes < 60:
        return f"{minutes}min"

    hours, remainder = divmod(total, 3600)
    rest_minutes = _round_seconds(remainder / 60)
    if rest_minutes == 60:
        hours += 1
        rest_minutes = 0
    return f"{hours}h {rest_minutes}min"


def day_bounds(start_date: date, end_date: date) -> tuple[datetime, datetime]:
    """Half-open UTC datetime window covering both calendar dates inclusively."""
    start = datetime.combine(start_date, time.min, tzinfo=UTC)
    end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=UTC)
    return start, end


def match_response_samples(
    inbound: list[TimedMessage], outbound: list[TimedMessage]
) -> list[float]:
    """
    Pair every inbound message with the earliest strictly later outbound
    message for the same contact and return the gaps in seconds.

    Inbound messages nobody answered yet produce no sample.
    """
    replies: dict[int, list[datetime]] = defaultdict(list)
    for message in outbound:
        replies[message.contact_id].append(message.timestamp)
    for timestamps in replies.values():
        timestamps.sort()

    samples: list[float] = []
    for message in inbound:
        timestamps = replies.get(message.contact_id)
        if not timestamps:
            continue
        index = bisect_right(timestamps, message.timestamp)
        if index < len(timestamps):
            samples.append((timestamps[index] - message.timestamp).total_seconds())
    return samples


def summarize_response_times(
    samples: list[float], first_response_samples: list[float]
) -> ResponseTimeStats:
    first_response = (
        _round_seconds(sum(first_response_samples) / len(first_response_samples))
        if first_response_samples
        else 0
    )
    if not samples:
        return ResponseTimeStats(first_response_time_seconds=first_response)

    return ResponseTimeStats(
        avg_response_time_seconds=_round_seconds(sum(samples) / len(samples)),
        min_response_time_seconds=_round_seconds(min(samples)),
        max_response_time_seconds=_round_seconds(max(samples)),
        first_response_time_seconds=first_response,
        total_responses=len(samples),
    )


class AnalyticsService:
    """
    Message-driven analytics engine.

    `ingest` is the only write path and raises PersistenceError on any store
    failure. Every read path degrades to empty/zero results instead of
    raising so dashboards keep rendering through store hiccups.
    """

    def __init__(self, store: Store | None = None):
        self._store = store or default_store

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self, instance_id: str, address: str, message: IncomingMessage
    ) -> IngestResult:
        """
        Record one message and update contact counters and the daily rollup.

        All writes share one transaction: a failure leaves no partial
        contact or rollup change behind, so a redelivery is processed afresh.

        Returns:
            IngestResult: the contact plus new/returning flags for notification
        """
        try:
            async with self._store.transaction() as conn:
                return await self._record(instance_id, address, message, conn)
        except Exception as e:
            logger.error(
                "Failed to ingest message",
                instance_id=instance_id,
                address=address,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PersistenceError(
                f"Message ingestion failed: {e}", instance_id=instance_id, address=address
            ) from e

    async def _record(
        self, instance_id: str, address: str, message: IncomingMessage, conn
    ) -> IngestResult:
        contacts = self._store.contacts
        if message.network_message_id and await self._store.messages.exists(
            instance_id, message.network_message_id, connection=conn
        ):
            existing = await contacts.find_by_address(instance_id, address, connection=conn)
            if existing is not None:
                logger.debug(
                    "Skipping already ingested message",
                    instance_id=instance_id,
                    network_message_id=message.network_message_id,
                )
                return IngestResult(contact=existing, is_duplicate=True)

        contact = await contacts.find_by_address(instance_id, address, connection=conn)
        name = message.sender_name if message.is_inbound else None
        is_new_contact = False
        is_returning_contact = False

        if contact is None:
            is_new_contact = True
            contact = await contacts.upsert(
                instance_id, address, name, message.timestamp, message.timestamp, connection=conn
            )
            logger.info(
                "New contact",
                instance_id=instance_id,
                address=address,
                direction=message.direction.value,
            )
        else:
            if message.is_inbound:
                gap_hours = (message.timestamp - contact.last_seen_at).total_seconds() / 3600
                if gap_hours >= settings.RETURNING_CONTACT_GAP_HOURS:
                    is_returning_contact = True
                    await contacts.increment_return(contact.id, connection=conn)
                    logger.info(
                        "Returning contact",
                        instance_id=instance_id,
                        address=address,
                        gap_hours=round(gap_hours),
                    )
            contact = await contacts.upsert(
                instance_id,
                address,
                name,
                contact.first_seen_at,
                message.timestamp,
                connection=conn,
            )

        await self._store.messages.create(instance_id, contact.id, message, connection=conn)

        if message.is_inbound:
            await contacts.increment_received(contact.id, connection=conn)
            contact.messages_received += 1
        else:
            await contacts.increment_sent(contact.id, connection=conn)
            contact.messages_sent += 1

        await self._store.daily_metrics.upsert_additive(
            instance_id,
            message.metric_date,
            new_contacts=1 if is_new_contact else 0,
            messages_received=1 if message.is_inbound else 0,
            messages_sent=0 if message.is_inbound else 1,
            returning_contacts=1 if is_returning_contact else 0,
            connection=conn,
        )

        return IngestResult(
            contact=contact,
            is_new_contact=is_new_contact,
            is_returning_contact=is_returning_contact,
        )

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def dashboard_metrics(
        self,
        instance_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> DashboardSnapshot:
        """Aggregate snapshot for one instance over an inclusive date range."""
        today = datetime.now(UTC).date()
        start = start_date or today
        end = end_date or today
        if start > end:
            start, end = end, start

        daily_metrics = []
        try:
            daily_metrics = await self._store.daily_metrics.get_by_date_range(
                instance_id, start, end
            )
        except Exception as e:
            logger.error("Failed to load daily metrics", instance_id=instance_id, error=str(e))

        totals = MetricTotals()
        for metric in daily_metrics:
            totals.add(metric)

        active_contacts = await self.get_active_contacts(
            instance_id, settings.ACTIVE_CONTACTS_LIMIT
        )
        pending_contacts = await self.get_pending_contacts(instance_id)
        response_times = await self.calculate_response_times(instance_id, start, end)
        contacts_by_day = await self._count_by_day(instance_id, start, end)

        return DashboardSnapshot(
            period=DashboardPeriod(start=start, end=end),
            totals=DashboardTotals(
                new_contacts=totals.new_contacts,
                messages_received=totals.messages_received,
                messages_sent=totals.messages_sent,
                returning_contacts=totals.returning_contacts,
            ),
            pending_contacts=len(pending_contacts),
            active_contacts=len(active_contacts),
            response_times=response_times,
            contacts_by_day=contacts_by_day,
            daily_breakdown=[
                DailyBreakdownEntry(
                    day=metric.metric_date,
                    new_contacts=metric.new_contacts,
                    messages_received=metric.messages_received,
                    messages_sent=metric.messages_sent,
                    returning_contacts=metric.returning_contacts,
                )
                for metric in daily_metrics
            ],
        )

    async def _count_by_day(self, instance_id: str, start: date, end: date) -> list[DayCount]:
        window_start, window_end = day_bounds(start, end)
        try:
            counts = await self._store.messages.count_by_date_range(
                instance_id, window_start, window_end
            )
        except Exception as e:
            logger.error("Failed to count messages by day", instance_id=instance_id, error=str(e))
            return []
        return [DayCount(day=c.day, received=c.received, sent=c.sent) for c in counts]

    async def calculate_response_times(
        self, instance_id: str, start_date: date, end_date: date
    ) -> ResponseTimeStats:
        """Response-time statistics for inbound messages received in range."""
        window_start, window_end = day_bounds(start_date, end_date)
        try:
            inbound = await self._store.messages.find_by_direction_between(
                instance_id, Direction.INBOUND, window_start, window_end
            )
            outbound: list[TimedMessage] = []
            if inbound:
                outbound = await self._store.messages.find_outbound_after(
                    instance_id,
                    sorted({message.contact_id for message in inbound}),
                    min(message.timestamp for message in inbound),
                )
            samples = match_response_samples(inbound, outbound)
        except Exception as e:
            logger.error(
                "Failed to calculate response times", instance_id=instance_id, error=str(e)
            )
            samples = []

        first_responses = await self.get_first_response_times(instance_id, start_date, end_date)
        return summarize_response_times(samples, first_responses)

    async def get_first_response_times(
        self, instance_id: str, start_date: date, end_date: date
    ) -> list[float]:
        """
        Seconds between a contact's first message and the first outbound
        message to it, for contacts first seen in range.
        """
        window_start, window_end = day_bounds(start_date, end_date)
        try:
            contacts = await self._store.contacts.find_first_seen_between(
                instance_id, window_start, window_end
            )
            first_outbound = await self._store.messages.first_outbound_by_contact(
                [contact.id for contact in contacts]
            )
        except Exception as e:
            logger.error(
                "Failed to load first response times", instance_id=instance_id, error=str(e)
            )
            return []

        return [
            (first_outbound[contact.id] - contact.first_seen_at).total_seconds()
            for contact in contacts
            if contact.id in first_outbound
        ]

    # ------------------------------------------------------------------
    # Contact listings
    # ------------------------------------------------------------------

    async def get_active_contacts(self, instance_id: str, limit: int = 50) -> list[ActiveContactView]:
        try:
            contacts = await self._store.contacts.find_recent(instance_id, limit)
        except Exception as e:
            logger.error("Failed to load active contacts", instance_id=instance_id, error=str(e))
            return []

        return [
            ActiveContactView(
                id=contact.id,
                address=contact.address,
                name=contact.name,
                first_message_at=contact.first_seen_at,
                last_message_at=contact.last_seen_at,
                messages_sent=contact.messages_sent,
                messages_received=contact.messages_received,
            )
            for contact in contacts
        ]

    async def get_pending_contacts(self, instance_id: str) -> list[PendingContactView]:
        """Contacts whose latest message is inbound, i.e. waiting on staff."""
        try:
            activity = await self._store.contacts.find_with_last_activity(instance_id)
        except Exception as e:
            logger.error("Failed to load pending contacts", instance_id=instance_id, error=str(e))
            return []

        return [
            PendingContactView(
                id=item.contact.id,
                address=item.contact.address,
                name=item.contact.name,
                last_message=item.last_body,
                last_message_at=item.last_timestamp,
                waiting_since=item.last_timestamp,
            )
            for item in activity
            if item.last_direction is Direction.INBOUND
        ]

    async def get_returning_contacts(
        self, instance_id: str, limit: int = 50
    ) -> list[ReturningContactView]:
        try:
            activity = await self._store.contacts.find_returning(instance_id, limit)
        except Exception as e:
            logger.error(
                "Failed to load returning contacts", instance_id=instance_id, error=str(e)
            )
            return []

        return [
            ReturningContactView(
                id=item.contact.id,
                address=item.contact.address,
                name=item.contact.name or item.contact.address,
                first_message_at=item.contact.first_seen_at,
                last_message_at=item.contact.last_seen_at,
                return_count=item.contact.return_count,
                last_message=item.last_body,
                last_message_timestamp=item.last_timestamp,
                messages_received=item.contact.messages_received,
                messages_sent=item.contact.messages_sent,
            )
            for item in activity
        ]

    async def get_contacts_with_preview(
        self, instance_id: str, limit: int = 50
    ) -> list[ContactPreview]:
        try:
            activity = await self._store.contacts.find_with_last_activity(instance_id, limit)
        except Exception as e:
            logger.error(
                "Failed to load contacts with preview", instance_id=instance_id, error=str(e)
            )
            return []

        return [
            ContactPreview(
                id=item.contact.id,
                address=item.contact.address,
                name=item.contact.name or item.contact.address,
                last_message=item.last_body,
                last_message_from_me=item.last_direction is Direction.OUTBOUND,
                last_message_at=item.contact.last_seen_at,
                received_count=item.inbound_total,
                return_count=item.contact.return_count,
                is_returning=item.contact.return_count > 0,
            )
            for item in activity
        ]

    async def get_contact(self, contact_id: int) -> ContactSummary | None:
        try:
            contact = await self._store.contacts.find_by_id(contact_id)
        except Exception as e:
            logger.error("Failed to load contact", contact_id=contact_id, error=str(e))
            return None

        if contact is None:
            return None
        return ContactSummary(
            id=contact.id,
            instance_id=contact.instance_id,
            address=contact.address,
            name=contact.name,
        )

    async def get_conversation(self, contact_id: int) -> list[ConversationMessage]:
        """Every message exchanged with a contact, oldest first."""
        try:
            messages = await self._store.messages.find_by_contact(contact_id)
        except Exception as e:
            logger.error("Failed to load conversation", contact_id=contact_id, error=str(e))
            return []

        return [
            ConversationMessage(
                id=message.id,
                network_message_id=message.network_message_id,
                from_me=message.direction is Direction.OUTBOUND,
                body=message.body,
                content_kind=message.content_kind,
                timestamp=message.timestamp,
            )
            for message in sorted(messages, key=lambda m: (m.timestamp, m.id))
        ]

    async def tenant_summary(self, tenant_id: str) -> list[InstanceSummary]:
        """Today's headline numbers for every instance a tenant owns."""
        try:
            instances = await self._store.instances.find_by_tenant(tenant_id)
        except Exception as e:
            logger.error("Failed to load tenant instances", tenant_id=tenant_id, error=str(e))
            return []

        summary = []
        for instance in instances:
            metrics = await self.dashboard_metrics(instance.id)
            summary.append(
                InstanceSummary(
                    instance_id=instance.id,
                    name=instance.name,
                    address=instance.address,
                    status=instance.status,
                    today=InstanceTodayMetrics(
                        new_contacts=metrics.totals.new_contacts,
                        messages_received=metrics.totals.messages_received,
                        messages_sent=metrics.totals.messages_sent,
                        pending_contacts=metrics.pending_contacts,
                        avg_response_time=format_duration(
                            metrics.response_times.avg_response_time_seconds
                        ),
                    ),
                )
            )
        return summary


analytics_service = AnalyticsService()
