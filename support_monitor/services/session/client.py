"""
Interface to the external messaging-network client.

The protocol client (pairing, encryption, multi-device sync) lives outside
this project. A concrete adapter implements ClientFactory/ClientHandle and
pushes ClientEvent objects through the `emit` callback it receives.
"""

import importlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol

MESSAGE_BATCH_NOTIFY = "notify"


@dataclass(slots=True)
class RawMessage:
    """One network message as delivered by the adapter."""

    remote_address: str
    from_me: bool
    timestamp: int  # epoch seconds
    message_id: str | None = None
    push_name: str | None = None
    content: dict[str, Any] | None = None


@dataclass(slots=True)
class CredentialsUpdated:
    """Credential keys to persist; a value of None deletes the key."""

    values: dict[str, Any]


@dataclass(slots=True)
class MessagesUpserted:
    messages: list[RawMessage]
    kind: str = MESSAGE_BATCH_NOTIFY


@dataclass(slots=True)
class ConnectionUpdate:
    connection: Literal["connecting", "open", "close"] | None = None
    qr: str | None = None
    status_code: int | None = None
    user_id: str | None = None


ClientEvent = CredentialsUpdated | MessagesUpserted | ConnectionUpdate


@dataclass(slots=True)
class SendReceipt:
    message_id: str | None
    timestamp: datetime


@dataclass(slots=True)
class ClientConfig:
    session_id: str
    credentials: dict[str, Any]
    emit: Callable[[ClientEvent], None]
    options: dict[str, Any] = field(default_factory=dict)


class ClientHandle(Protocol):
    @property
    def user_id(self) -> str | None:
        """Network identity once paired, e.g. "5511999999999:12@s.whatsapp.net"."""

    async def send(self, address: str, text: str) -> SendReceipt: ...

    async def close(self) -> None: ...


class ClientFactory(Protocol):
    async def open(self, config: ClientConfig) -> ClientHandle: ...


def load_client_factory(import_path: str) -> ClientFactory:
    """
    Resolve a "package.module:attribute" path to a client factory.

    A class attribute is instantiated with no arguments.
    """
    module_name, _, attribute = import_path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Invalid client factory path '{import_path}', expected 'module:attr'")

    factory = getattr(importlib.import_module(module_name), attribute)
    return factory() if isinstance(factory, type) else factory
