"""
Session supervision for monitored messaging numbers.

The supervisor owns connection lifecycles; the modules next to it hold the
client boundary, event fan-out, retry policy and credential storage it uses.
"""

from .client import ClientConfig, ClientFactory, ClientHandle, load_client_factory  # noqa: F401
from .events import EventBus, LifecycleEvent, LifecycleKind, MessageNotification  # noqa: F401
from .registry import SessionState  # noqa: F401
from .supervisor import (  # noqa: F401
    ActiveSession,
    SendError,
    SessionCreationError,
    SessionSupervisor,
)
