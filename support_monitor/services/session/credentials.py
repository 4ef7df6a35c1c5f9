"""
Session credential persistence for the network client.

Each key is stored as Fernet-encrypted JSON. Values that fail to decrypt
(for example after a key rotation) are logged and treated as absent so the
client can pair again instead of crashing the session.
"""

import json
from typing import Any

from support_monitor.infrastructure.observability.logging import get_logger
from support_monitor.repositories.credential_repository import CredentialRepository
from support_monitor.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_data,
    encrypt_data,
)

logger = get_logger(__name__)


class SessionCredentialStore:
    def __init__(self, repository: CredentialRepository):
        self._repository = repository

    async def load(self, session_id: str) -> dict[str, Any]:
        """Read every stored key for a session. Called once per session start."""
        stored = await self._repository.get_all(session_id)
        credentials: dict[str, Any] = {}
        for key, encrypted in stored.items():
            try:
                credentials[key] = json.loads(decrypt_data(encrypted))
            except (EncryptionError, ValueError) as e:
                logger.warning(
                    "Discarding unreadable credential key",
                    session_id=session_id,
                    data_key=key,
                    error=str(e),
                )
        logger.debug("Session credentials loaded", session_id=session_id, key_count=len(credentials))
        return credentials

    async def apply(self, session_id: str, values: dict[str, Any]) -> None:
        """Persist an update from the client: None deletes, anything else is written."""
        for key, value in values.items():
            if value is None:
                await self._repository.delete(session_id, key)
            else:
                await self._repository.set(session_id, key, encrypt_data(json.dumps(value)))

    async def clear(self, session_id: str) -> int:
        removed = await self._repository.delete_all(session_id)
        logger.info("Session credentials cleared", session_id=session_id, removed=removed)
        return removed
