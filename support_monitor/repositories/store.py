"""
The store seen by the services: one object bundling every repository.

Services take a Store instead of importing repositories directly, so an
alternative backend only has to provide objects with the same methods plus
a ``transaction`` context whose yielded connection the repositories accept.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any

from support_monitor.db.helpers import transaction as db_transaction
from support_monitor.repositories.contact_repository import ContactRepository
from support_monitor.repositories.credential_repository import CredentialRepository
from support_monitor.repositories.daily_metric_repository import DailyMetricRepository
from support_monitor.repositories.instance_repository import InstanceRepository
from support_monitor.repositories.message_repository import MessageRepository


@dataclass(slots=True)
class Store:
    contacts: ContactRepository = field(default_factory=ContactRepository)
    messages: MessageRepository = field(default_factory=MessageRepository)
    daily_metrics: DailyMetricRepository = field(default_factory=DailyMetricRepository)
    credentials: CredentialRepository = field(default_factory=CredentialRepository)
    instances: InstanceRepository = field(default_factory=InstanceRepository)
    transaction: Callable[[], AbstractAsyncContextManager[Any]] = db_transaction


# Default PostgreSQL-backed store
store = Store()
