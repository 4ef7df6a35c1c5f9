"""
In-memory registry of supervised sessions.

Each session id has its own asyncio.Lock. Supervisor operations and client
event handlers on the same id run one at a time while different ids proceed
independently.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from support_monitor.services.session.client import ClientEvent, ClientHandle
from support_monitor.services.session.policy import QrWindow, ReconnectBackoff


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    PAUSED_QR_LOOP = "paused_qr_loop"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One adapter handle plus the queue and worker that drain its events in order."""

    generation: int
    handle: ClientHandle | None = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    worker: asyncio.Task | None = None
    closed: bool = False

    def push(self, event: ClientEvent) -> None:
        if not self.closed:
            self.queue.put_nowait(event)


@dataclass(eq=False)
class ManagedSession:
    session_id: str
    state: SessionState = SessionState.IDLE
    connection: Connection | None = None
    address: str | None = None
    qr_window: QrWindow = field(default_factory=QrWindow)
    backoff: ReconnectBackoff = field(default_factory=ReconnectBackoff)
    reconnect_task: asyncio.Task | None = None
    generation: int = 0

    @property
    def is_ready(self) -> bool:
        return (
            self.state is SessionState.CONNECTED
            and self.connection is not None
            and not self.connection.closed
            and self.connection.handle is not None
        )

    @property
    def is_healthy(self) -> bool:
        return self.is_ready and bool(self.connection.handle.user_id)

    def cancel_reconnect(self) -> None:
        task = self.reconnect_task
        self.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def reset_counters(self) -> None:
        self.qr_window.reset()
        self.backoff.reset()
        self.cancel_reconnect()


class SessionRegistry:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._sessions: dict[str, ManagedSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """
        Hold the session's lock for the duration of the block.

        The lock is dropped once no task holds or waits for it and the
        session is no longer registered.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                if session_id not in self._sessions:
                    self._locks.pop(session_id, None)

    def get(self, session_id: str) -> ManagedSession | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> ManagedSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = ManagedSession(session_id=session_id, qr_window=QrWindow(clock=self._clock))
            self._sessions[session_id] = session
        return session

    def pop(self, session_id: str) -> ManagedSession | None:
        """Remove and return the session; a second call is a no-op."""
        return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[ManagedSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
