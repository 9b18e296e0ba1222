"""Append-only security event log."""

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from src.bizhub.core.models.security_event import SecurityEvent, SecurityEventType
from src.bizhub.core.services.best_effort import BestEffort
from src.bizhub.core.storage.document_store import DocumentStore

SECURITY_LOGS = "securityLogs"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SecurityEventLogger:
    """Records authentication-relevant events in the ``securityLogs`` collection.

    Logging never raises: store failures are absorbed and reported through loguru.
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = utc_now,
        policy: BestEffort | None = None,
    ):
        self._store = store
        self._clock = clock
        self._policy = policy or BestEffort("security_log")

    async def log(
        self,
        event_type: SecurityEventType,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> None:
        event = SecurityEvent(
            event_type=event_type,
            details=details or {},
            timestamp=self._clock(),
            ip_address=ip_address or "unknown",
        )
        logger.bind(security_event=event_type.value).info(
            "Security event {} from {}", event_type.value, event.ip_address
        )

        await self._policy.run(
            lambda: self._store.set(SECURITY_LOGS, str(uuid.uuid4()), event.to_document()),
            fallback=None,
            action=f"Recording security event {event_type.value}",
        )

    async def recent(self, event_type: SecurityEventType | None = None) -> list[SecurityEvent]:
        """Events of one kind (or all), newest first."""
        filters = {"eventType": event_type.value} if event_type else None
        documents = await self._store.query(SECURITY_LOGS, filters)
        events = [SecurityEvent.model_validate(doc) for doc in documents]
        return sorted(events, key=lambda e: e.timestamp, reverse=True)
