"""
Connection Lifecycle Supervisor.

Owns one state machine per session: QR pairing, reconnect with backoff,
QR-loop pause, and forwarding of message batches into the analytics engine.
It is the only writer of instance status and session credentials.

Events from a client handle are queued and drained by one worker task per
connection, so a session's events are handled strictly in arrival order and
each message is fully ingested before the next one starts. Handlers run under
the session lock, the same lock held by connect/disconnect/remove and the
reconnect timer; notifications are published after the lock is released so
subscribers may call back into the supervisor.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from support_monitor.config import settings
from support_monitor.infrastructure.observability.logging import (
    bind_session_context,
    get_logger,
    log_session_transition,
)
from support_monitor.models.domain.analytics_domain import (
    Direction,
    IncomingMessage,
    InstanceStatus,
)
from support_monitor.repositories.store import Store, store as default_store
from support_monitor.services.analytics_service import AnalyticsService, PersistenceError
from support_monitor.services.session.client import (
    MESSAGE_BATCH_NOTIFY,
    ClientConfig,
    ClientEvent,
    ClientFactory,
    ClientHandle,
    ConnectionUpdate,
    CredentialsUpdated,
    MessagesUpserted,
    RawMessage,
    SendReceipt,
)
from support_monitor.services.session.content import (
    content_kind,
    extract_body,
    is_group_address,
    normalize_address,
    resolve_user_address,
    to_network_address,
)
from support_monitor.services.session.credentials import SessionCredentialStore
from support_monitor.services.session.events import (
    EventBus,
    LifecycleEvent,
    LifecycleKind,
    MessageNotification,
)
from support_monitor.services.session.registry import (
    Connection,
    ManagedSession,
    SessionRegistry,
    SessionState,
)

logger = get_logger(__name__)

QR_LOOP_MESSAGE = "Too many QR codes without pairing. Connect again to get a new QR code."

# Notifications collected while the session lock is held
Outbox = list[LifecycleEvent | MessageNotification]


class SessionCreationError(Exception):
    """The network client could not be initialised for a session."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class SendError(Exception):
    """An outbound message could not be handed to the network."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


@dataclass(slots=True)
class ActiveSession:
    session_id: str
    address: str | None
    is_ready: bool = True


class SessionSupervisor:
    def __init__(
        self,
        client_factory: ClientFactory | None,
        analytics: AnalyticsService | None = None,
        store: Store | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client_factory = client_factory
        self._store = store or default_store
        self._analytics = analytics or AnalyticsService(self._store)
        self._credentials = SessionCredentialStore(self._store.credentials)
        self._sleep = sleep
        self.registry = SessionRegistry(clock=clock)
        self.lifecycle_events: EventBus[LifecycleEvent] = EventBus("lifecycle")
        self.message_events: EventBus[MessageNotification] = EventBus("messages")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(self, session_id: str, force_new: bool = False) -> ClientHandle:
        """
        Start (or restart) a session.

        A healthy connected session is returned as is. Any other call clears
        QR/backoff state, including a QR-loop pause, and opens a new client.

        Raises:
            SessionCreationError: the client could not be initialised
        """
        if not session_id:
            raise ValueError("session_id is required")

        async with self.registry.lock(session_id):
            session = self.registry.get(session_id)
            if session is not None and session.is_healthy and not force_new:
                logger.info("Session already connected", session_id=session_id)
                return session.connection.handle

            session = self.registry.get_or_create(session_id)
            session.reset_counters()
            await self._teardown(session)

            if force_new:
                try:
                    await self._credentials.clear(session_id)
                except Exception as e:
                    raise SessionCreationError(
                        f"Could not discard credentials: {e}", session_id
                    ) from e

            return await self._open(session)

    async def disconnect(self, session_id: str) -> bool:
        """Close the live client and forget the session; credentials are kept."""
        async with self.registry.lock(session_id):
            return await self._disconnect_locked(session_id)

    async def remove(self, session_id: str) -> None:
        """Disconnect and wipe credentials. Safe to call repeatedly."""
        async with self.registry.lock(session_id):
            await self._discard_locked(session_id)

    async def send_message(self, session_id: str, address: str, text: str) -> SendReceipt:
        """
        Send a text message and record it as outbound traffic.

        Raises:
            SendError: the session is not ready, or the client rejected the send
        """
        session = self.registry.get(session_id)
        if session is None or not session.is_ready:
            raise SendError("Session is not connected", session_id)

        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is required")

        try:
            receipt = await session.connection.handle.send(to_network_address(address), text)
        except Exception as e:
            logger.error("Failed to send message", session_id=session_id, error=str(e))
            raise SendError(f"Send failed: {e}", session_id) from e

        logger.info("Message sent", session_id=session_id, message_id=receipt.message_id)

        instance = await self._find_instance(session_id)
        if instance is not None:
            notification = await self._ingest(
                session_id,
                instance.id,
                normalize_address(address),
                IncomingMessage(
                    direction=Direction.OUTBOUND,
                    body=text,
                    timestamp=receipt.timestamp,
                    content_kind="text",
                    network_message_id=receipt.message_id,
                ),
            )
            if notification is not None:
                await self.message_events.publish(notification)
        return receipt

    def get_active_sessions(self) -> list[ActiveSession]:
        return [
            ActiveSession(session_id=session.session_id, address=session.address)
            for session in self.registry
            if session.is_ready
        ]

    def get_session_state(self, session_id: str) -> SessionState | None:
        session = self.registry.get(session_id)
        return session.state if session else None

    async def restore_sessions(
        self, session_ids: Iterable[str], delay_seconds: float | None = None
    ) -> list[str]:
        """Reconnect previously paired sessions one by one; failures are skipped."""
        delay = settings.SESSION_RESTORE_DELAY_SECONDS if delay_seconds is None else delay_seconds
        pending = [session_id for session_id in session_ids if session_id]
        restored: list[str] = []

        for index, session_id in enumerate(pending):
            logger.info("Restoring session", session_id=session_id)
            try:
                await self.connect(session_id)
                restored.append(session_id)
            except Exception as e:
                logger.error("Failed to restore session", session_id=session_id, error=str(e))

            if delay > 0 and index < len(pending) - 1:
                await self._sleep(delay)

        logger.info("Session restore finished", requested=len(pending), restored=len(restored))
        return restored

    async def restore_known_sessions(self) -> list[str]:
        """Restore every instance that was connected or connecting at last shutdown."""
        try:
            instances = await self._store.instances.find_by_status(
                [InstanceStatus.CONNECTED, InstanceStatus.CONNECTING]
            )
        except Exception as e:
            logger.error("Failed to load instances to restore", error=str(e))
            return []
        return await self.restore_sessions(instance.session_id for instance in instances)

    async def shutdown(self) -> None:
        """Close every session at process exit; credentials and status are kept."""
        workers = []
        for session in self.registry:
            async with self.registry.lock(session.session_id):
                if self.registry.pop(session.session_id) is None:
                    continue
                session.cancel_reconnect()
                if session.connection is not None and session.connection.worker is not None:
                    workers.append(session.connection.worker)
                await self._teardown(session)

        current = asyncio.current_task()
        for worker in workers:
            if worker is not current and not worker.done():
                worker.cancel()
        await asyncio.gather(*(w for w in workers if w is not current), return_exceptions=True)
        logger.info("Session supervisor stopped", closed_sessions=len(workers))

    # ------------------------------------------------------------------
    # Connection management (callers hold the session lock)
    # ------------------------------------------------------------------

    async def _disconnect_locked(self, session_id: str) -> bool:
        session = self.registry.pop(session_id)
        if session is None:
            return False

        session.cancel_reconnect()
        await self._teardown(session)
        self._transition(session, SessionState.CLOSED, reason="disconnect")
        await self._set_instance_status(session_id, InstanceStatus.DISCONNECTED)
        logger.info("Session disconnected", session_id=session_id)
        return True

    async def _discard_locked(self, session_id: str) -> None:
        await self._disconnect_locked(session_id)
        await self._credentials.clear(session_id)
        logger.info("Session removed", session_id=session_id)

    async def _open(self, session: ManagedSession) -> ClientHandle:
        await self._teardown(session)

        session.generation += 1
        connection = Connection(generation=session.generation)
        session.connection = connection
        self._transition(session, SessionState.CONNECTING, generation=connection.generation)
        await self._set_instance_status(session.session_id, InstanceStatus.CONNECTING)

        try:
            if self._client_factory is None:
                raise SessionCreationError("No network client factory configured", session.session_id)
            credentials = await self._credentials.load(session.session_id)
            handle = await self._client_factory.open(
                ClientConfig(
                    session_id=session.session_id,
                    credentials=credentials,
                    emit=connection.push,
                )
            )
        except Exception as e:
            connection.closed = True
            session.connection = None
            self._transition(session, SessionState.IDLE, reason="client_init_failed")
            await self._set_instance_status(session.session_id, InstanceStatus.DISCONNECTED)
            logger.error(
                "Failed to create session", session_id=session.session_id, error=str(e)
            )
            if isinstance(e, SessionCreationError):
                raise
            raise SessionCreationError(
                f"Network client initialisation failed: {e}", session.session_id
            ) from e

        connection.handle = handle
        connection.worker = asyncio.create_task(
            self._drain(session, connection), name=f"session-events:{session.session_id}"
        )
        logger.info("Session created", session_id=session.session_id)
        return handle

    async def _teardown(self, session: ManagedSession) -> None:
        if session.connection is not None:
            await self._close_connection(session, session.connection)

    async def _close_connection(
        self, session: ManagedSession, connection: Connection, close_handle: bool = True
    ) -> None:
        if session.connection is connection:
            session.connection = None
        if connection.closed:
            return

        connection.closed = True
        connection.queue.put_nowait(None)
        if close_handle and connection.handle is not None:
            try:
                await connection.handle.close()
            except Exception as e:
                logger.warning(
                    "Error closing network client", session_id=session.session_id, error=str(e)
                )

    def _owns(self, session: ManagedSession, connection: Connection) -> bool:
        """False once the session was replaced or reopened on another connection."""
        return self.registry.get(session.session_id) is session and (
            session.connection is None or session.connection is connection
        )

    def _schedule_reconnect(self, session: ManagedSession) -> None:
        delay_ms = session.backoff.next_delay_ms()
        if delay_ms is None:
            logger.warning(
                "Reconnect attempts exhausted, abandoning session",
                session_id=session.session_id,
                attempts=session.backoff.max_attempts,
            )
            self._transition(session, SessionState.CLOSED, reason="reconnect_exhausted")
            if self.registry.get(session.session_id) is session:
                self.registry.pop(session.session_id)
            return

        self._transition(
            session,
            SessionState.RECONNECTING,
            attempt=session.backoff.attempts,
            delay_ms=delay_ms,
        )
        session.cancel_reconnect()
        session.reconnect_task = asyncio.create_task(
            self._reconnect_later(session, delay_ms / 1000),
            name=f"session-reconnect:{session.session_id}",
        )

    async def _reconnect_later(self, session: ManagedSession, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        async with self.registry.lock(session.session_id):
            superseded = (
                self.registry.get(session.session_id) is not session
                or session.reconnect_task is not asyncio.current_task()
            )
            if superseded:
                return
            session.reconnect_task = None
            try:
                await self._open(session)
            except SessionCreationError as e:
                logger.error(
                    "Reconnect attempt failed",
                    session_id=session.session_id,
                    attempt=session.backoff.attempts,
                    error=str(e),
                )
                self._schedule_reconnect(session)

    # ------------------------------------------------------------------
    # Client events
    # ------------------------------------------------------------------

    async def _drain(self, session: ManagedSession, connection: Connection) -> None:
        bind_session_context(session.session_id)
        while True:
            event = await connection.queue.get()
            if event is None:
                break

            outbox: Outbox = []
            async with self.registry.lock(session.session_id):
                if connection.closed:
                    continue
                try:
                    await self._handle_event(session, connection, event, outbox)
                except Exception:
                    logger.exception(
                        "Failed to handle client event",
                        session_id=session.session_id,
                        event_type=type(event).__name__,
                    )

            for notification in outbox:
                await self._publish(notification)

    async def _publish(self, notification: LifecycleEvent | MessageNotification) -> None:
        if isinstance(notification, MessageNotification):
            await self.message_events.publish(notification)
        else:
            await self.lifecycle_events.publish(notification)

    async def _handle_event(
        self, session: ManagedSession, connection: Connection, event: ClientEvent, outbox: Outbox
    ) -> None:
        if isinstance(event, CredentialsUpdated):
            await self._credentials.apply(session.session_id, event.values)
        elif isinstance(event, MessagesUpserted):
            await self._handle_messages(session, connection, event, outbox)
        elif isinstance(event, ConnectionUpdate):
            if event.qr:
                await self._handle_qr(session, connection, event.qr, outbox)
                if connection.closed:
                    return
            if event.connection == "close":
                await self._handle_close(session, connection, event.status_code, outbox)
            elif event.connection == "open":
                await self._handle_open(session, connection, event, outbox)
        else:
            logger.warning("Unknown client event", event_type=type(event).__name__)

    async def _handle_qr(
        self, session: ManagedSession, connection: Connection, qr: str, outbox: Outbox
    ) -> None:
        attempt = session.qr_window.record()
        max_attempts = session.qr_window.max_attempts

        if session.qr_window.exceeded:
            logger.warning(
                "QR code loop detected, pausing session",
                session_id=session.session_id,
                attempt=attempt,
            )
            session.cancel_reconnect()
            self._transition(session, SessionState.PAUSED_QR_LOOP, attempt=attempt)
            await self._close_connection(session, connection)
            await self._set_instance_status(session.session_id, InstanceStatus.DISCONNECTED)
            outbox.append(
                LifecycleEvent(
                    kind=LifecycleKind.QR_LOOP,
                    session_id=session.session_id,
                    payload={"message": QR_LOOP_MESSAGE, "attempt": attempt},
                )
            )
            return

        if session.state is not SessionState.AWAITING_SCAN:
            self._transition(session, SessionState.AWAITING_SCAN)
        logger.info(
            "QR code issued", session_id=session.session_id, attempt=attempt, max_attempts=max_attempts
        )
        outbox.append(
            LifecycleEvent(
                kind=LifecycleKind.QR,
                session_id=session.session_id,
                payload={"qr": qr, "attempt": attempt, "max_attempts": max_attempts},
            )
        )

    async def _handle_close(
        self,
        session: ManagedSession,
        connection: Connection,
        status_code: int | None,
        outbox: Outbox,
    ) -> None:
        logged_out = status_code in settings.NO_RECONNECT_STATUS_CODES
        paused = session.state is SessionState.PAUSED_QR_LOOP
        should_reconnect = not logged_out and not paused

        logger.info(
            "Connection closed",
            session_id=session.session_id,
            status_code=status_code,
            should_reconnect=should_reconnect,
        )
        await self._close_connection(session, connection, close_handle=False)
        await self._set_instance_status(session.session_id, InstanceStatus.DISCONNECTED)
        if not self._owns(session, connection):
            logger.info("Ignoring close for a replaced connection", session_id=session.session_id)
            return

        outbox.append(
            LifecycleEvent(
                kind=LifecycleKind.CLOSE,
                session_id=session.session_id,
                payload={"should_reconnect": should_reconnect, "status_code": status_code},
            )
        )

        if logged_out:
            self._transition(session, SessionState.CLOSED, reason="logged_out", status_code=status_code)
            await self._discard_locked(session.session_id)
        elif should_reconnect:
            self._schedule_reconnect(session)

    async def _handle_open(
        self,
        session: ManagedSession,
        connection: Connection,
        update: ConnectionUpdate,
        outbox: Outbox,
    ) -> None:
        session.reset_counters()
        user_id = update.user_id or (connection.handle.user_id if connection.handle else None)
        session.address = resolve_user_address(user_id) or None
        self._transition(session, SessionState.CONNECTED, address=session.address)
        await self._set_instance_status(
            session.session_id, InstanceStatus.CONNECTED, session.address
        )
        outbox.append(
            LifecycleEvent(
                kind=LifecycleKind.OPEN,
                session_id=session.session_id,
                payload={"address": session.address, "user_id": user_id},
            )
        )

    async def _handle_messages(
        self,
        session: ManagedSession,
        connection: Connection,
        batch: MessagesUpserted,
        outbox: Outbox,
    ) -> None:
        if batch.kind != MESSAGE_BATCH_NOTIFY:
            logger.debug("Ignoring message batch", session_id=session.session_id, kind=batch.kind)
            return

        instance = await self._find_instance(session.session_id)
        if instance is None:
            logger.warning(
                "No instance for session, dropping message batch",
                session_id=session.session_id,
                count=len(batch.messages),
            )
            return

        for raw in batch.messages:
            if connection.closed:
                break
            normalized = self._normalize_message(raw)
            if normalized is None:
                continue
            address, message = normalized
            notification = await self._ingest(session.session_id, instance.id, address, message)
            if notification is not None:
                outbox.append(notification)

    def _normalize_message(self, raw: RawMessage) -> tuple[str, IncomingMessage] | None:
        if is_group_address(raw.remote_address):
            logger.debug("Ignoring group message", message_id=raw.message_id)
            return None

        address = normalize_address(raw.remote_address)
        body = extract_body(raw.content)
        if not address or not body.strip():
            logger.debug("Ignoring message without content", message_id=raw.message_id)
            return None

        timestamp = (
            datetime.fromtimestamp(raw.timestamp, UTC) if raw.timestamp else datetime.now(UTC)
        )
        return address, IncomingMessage(
            direction=Direction.OUTBOUND if raw.from_me else Direction.INBOUND,
            body=body,
            timestamp=timestamp,
            content_kind=content_kind(raw.content),
            network_message_id=raw.message_id,
            sender_name=raw.push_name,
        )

    async def _ingest(
        self, session_id: str, instance_id: str, address: str, message: IncomingMessage
    ) -> MessageNotification | None:
        """Ingest one message; returns the notification to publish, if any."""
        try:
            result = await self._analytics.ingest(instance_id, address, message)
        except PersistenceError as e:
            logger.error(
                "Dropping message after persistence failure",
                session_id=session_id,
                instance_id=instance_id,
                network_message_id=message.network_message_id,
                error=str(e),
            )
            return None

        if result.is_duplicate:
            return None
        return MessageNotification(
            session_id=session_id,
            instance_id=instance_id,
            address=address,
            message=message,
            result=result,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _find_instance(self, session_id: str):
        try:
            return await self._store.instances.find_by_session_id(session_id)
        except Exception as e:
            logger.error("Failed to look up instance", session_id=session_id, error=str(e))
            return None

    async def _set_instance_status(
        self, session_id: str, status: InstanceStatus, address: str | None = None
    ) -> None:
        try:
            await self._store.instances.update_status(session_id, status, address)
        except Exception as e:
            logger.error(
                "Failed to update instance status",
                session_id=session_id,
                status=status.value,
                error=str(e),
            )

    def _transition(self, session: ManagedSession, state: SessionState, **fields) -> None:
        previous = session.state
        session.state = state
        log_session_transition(session.session_id, previous.value, state.value, **fields)
