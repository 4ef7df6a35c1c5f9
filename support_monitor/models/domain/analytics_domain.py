# models/domain/analytics_domain.py
"""
Domain models for message analytics.

Row shapes are plain dataclasses shared by the repositories and the
analytics service; dashboard outputs are pydantic models so the API layer
can serialise them directly.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum

from pydantic import BaseModel, Field


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class InstanceStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(slots=True)
class Instance:
    id: str
    tenant_id: str
    session_id: str
    name: str
    address: str | None
    status: InstanceStatus
    created_at: datetime | None = None


@dataclass(slots=True)
class Contact:
    id: int
    instance_id: str
    address: str
    name: str | None
    first_seen_at: datetime
    last_seen_at: datetime
    messages_received: int = 0
    messages_sent: int = 0
    return_count: int = 0


@dataclass(slots=True)
class StoredMessage:
    id: int
    instance_id: str
    contact_id: int
    network_message_id: str | None
    direction: Direction
    body: str | None
    content_kind: str
    timestamp: datetime
    received_at: datetime | None = None


@dataclass(slots=True)
class DailyMetric:
    instance_id: str
    metric_date: date
    new_contacts: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    returning_contacts: int = 0


@dataclass(slots=True)
class IncomingMessage:
    """A normalised message handed to the analytics engine for ingestion."""

    direction: Direction
    body: str
    timestamp: datetime
    content_kind: str = "text"
    network_message_id: str | None = None
    sender_name: str | None = None

    @property
    def is_inbound(self) -> bool:
        return self.direction is Direction.INBOUND

    @property
    def metric_date(self) -> date:
        """Calendar date (UTC) the message counts towards."""
        return self.timestamp.astimezone(UTC).date()


@dataclass(slots=True)
class IngestResult:
    contact: Contact
    is_new_contact: bool = False
    is_returning_contact: bool = False
    is_duplicate: bool = False


@dataclass(slots=True)
class TimedMessage:
    """Minimal (contact, timestamp) projection used by response-time matching."""

    contact_id: int
    timestamp: datetime


@dataclass(slots=True)
class ContactLastActivity:
    contact: Contact
    last_direction: Direction | None
    last_body: str | None = None
    last_timestamp: datetime | None = None
    inbound_total: int = 0


@dataclass(slots=True)
class DailyMessageCount:
    day: date
    received: int = 0
    sent: int = 0


@dataclass(slots=True)
class MetricTotals:
    new_contacts: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    returning_contacts: int = 0

    def add(self, metric: DailyMetric) -> None:
        self.new_contacts += metric.new_contacts
        self.messages_received += metric.messages_received
        self.messages_sent += metric.messages_sent
        self.returning_contacts += metric.returning_contacts


# ---------------------------------------------------------------------------
# Read models returned to the API layer
# ---------------------------------------------------------------------------


class ResponseTimeStats(BaseModel):
    avg_response_time_seconds: int = 0
    min_response_time_seconds: int = 0
    max_response_time_seconds: int = 0
    first_response_time_seconds: int = 0
    total_responses: int = 0


class DashboardPeriod(BaseModel):
    start: date
    end: date


class DashboardTotals(BaseModel):
    new_contacts: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    returning_contacts: int = 0


class DailyBreakdownEntry(BaseModel):
    day: date
    new_contacts: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    returning_contacts: int = 0


class DayCount(BaseModel):
    day: date
    received: int = 0
    sent: int = 0


class DashboardSnapshot(BaseModel):
    period: DashboardPeriod
    totals: DashboardTotals = Field(default_factory=DashboardTotals)
    pending_contacts: int = 0
    active_contacts: int = 0
    response_times: ResponseTimeStats = Field(default_factory=ResponseTimeStats)
    contacts_by_day: list[DayCount] = []
    daily_breakdown: list[DailyBreakdownEntry] = []


class ActiveContactView(BaseModel):
    id: int
    address: str
    name: str | None = None
    first_message_at: datetime
    last_message_at: datetime
    messages_sent: int = 0
    messages_received: int = 0


class PendingContactView(BaseModel):
    id: int
    address: str
    name: str | None = None
    last_message: str | None = None
    last_message_at: datetime | None = None
    waiting_since: datetime | None = None


class ReturningContactView(BaseModel):
    id: int
    address: str
    name: str
    first_message_at: datetime
    last_message_at: datetime
    return_count: int = 0
    last_message: str | None = None
    last_message_timestamp: datetime | None = None
    messages_received: int = 0
    messages_sent: int = 0


class ContactPreview(BaseModel):
    id: int
    address: str
    name: str
    last_message: str | None = None
    last_message_from_me: bool = False
    last_message_at: datetime
    received_count: int = 0
    return_count: int = 0
    is_returning: bool = False


class ConversationMessage(BaseModel):
    id: int
    network_message_id: str | None = None
    from_me: bool
    body: str | None = None
    content_kind: str = "text"
    timestamp: datetime


class ContactSummary(BaseModel):
    id: int
    instance_id: str
    address: str
    name: str | None = None


class InstanceTodayMetrics(BaseModel):
    new_contacts: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    pending_contacts: int = 0
    avg_response_time: str = "0s"


class InstanceSummary(BaseModel):
    instance_id: str
    name: str
    address: str | None = None
    status: InstanceStatus
    today: InstanceTodayMetrics = Field(default_factory=InstanceTodayMetrics)



class InstanceView(BaseModel):
    """Stored instance plus the supervisor's live view of its session."""

    id: str
    tenant_id: str
    session_id: str
    name: str
    address: str | None = None
    status: InstanceStatus
    session_state: str | None = None
    is_ready: bool = False
    created_at: datetime | None = None
