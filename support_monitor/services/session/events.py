"""
In-process event fan-out with explicit subscriptions.

A failing subscriber is logged and skipped; the remaining subscribers still
receive the event.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from support_monitor.infrastructure.observability.logging import get_logger
from support_monitor.models.domain.analytics_domain import IncomingMessage, IngestResult

logger = get_logger(__name__)

EventT = TypeVar("EventT")
Subscriber = Callable[[EventT], Awaitable[None] | None]


class LifecycleKind(str, Enum):
    QR = "qr"
    OPEN = "open"
    CLOSE = "close"
    QR_LOOP = "qr-loop"


@dataclass(slots=True)
class LifecycleEvent:
    kind: LifecycleKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MessageNotification:
    session_id: str
    instance_id: str
    address: str
    message: IncomingMessage
    result: IngestResult


class Subscription:
    """Handle returned by EventBus.subscribe; call unsubscribe() to stop delivery."""

    def __init__(self, bus: "EventBus", callback: Callable):
        self._bus = bus
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus(Generic[EventT]):
    def __init__(self, name: str):
        self.name = name
        self._subscriptions: list[Subscription] = []

    def subscribe(self, callback: Subscriber) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions = [s for s in self._subscriptions if s is not subscription]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: EventT) -> int:
        """Deliver to every subscriber in registration order; returns successful deliveries."""
        delivered = 0
        for subscription in list(self._subscriptions):
            try:
                result = subscription._callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    bus=self.name,
                    event_type=type(event).__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return delivered
