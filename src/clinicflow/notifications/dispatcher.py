"""
Fire-and-forget notification dispatch.

The workflow never waits on notifications: ``notify`` schedules delivery to
every sink and returns immediately. Sink failures are logged and never
reach the caller. ``drain`` awaits anything still in flight (shutdown and
tests).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import UUID

import httpx

from clinicflow.models.base import utcnow

logger = logging.getLogger(__name__)

# Payload keys that must never be written to logs
SENSITIVE_PAYLOAD_KEYS = frozenset({"download_url", "message"})


class NotificationType(str, Enum):
    TRANSITION = "transition"
    CLIENT_STATE_CHANGED = "client_state_changed"
    PACKAGE_READY = "package_ready"
    EXPORT_FAILED = "export_failed"
    PACKAGE_EXPIRED = "package_expired"
    SLA_VIOLATION = "sla_violation"
    DOCUMENT_REMINDER = "document_reminder"


@dataclass(frozen=True)
class NotificationEvent:
    """Something happened to a referral that someone may want to hear about."""

    type: NotificationType
    referral_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "referral_id": str(self.referral_id),
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }

    def loggable_payload(self) -> dict[str, Any]:
        return {k: v for k, v in self.payload.items() if k not in SENSITIVE_PAYLOAD_KEYS}


class NotificationSink(Protocol):
    name: str

    async def send(self, event: NotificationEvent) -> None: ...


class LoggingSink:
    """Writes events to the application log without sensitive fields."""

    name = "log"

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notification {event.type.value} for referral {event.referral_id}: "
            f"{event.loggable_payload()}"
        )


class WebhookSink:
    """POSTs events as JSON to a configured URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, event: NotificationEvent) -> None:
        headers = {"Content-Type": "application/json", "X-Source": "clinicflow"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        response = await self._client.post(self.url, json=event.to_dict(), headers=headers)
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """Schedules delivery of events to all registered sinks."""

    def __init__(self, sinks: Optional[list[NotificationSink]] = None):
        self.sinks: list[NotificationSink] = list(sinks) if sinks is not None else [LoggingSink()]
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def notify(self, event: NotificationEvent) -> None:
        """Schedule delivery and return immediately."""
        for sink in self.sinks:
            task = asyncio.create_task(self._deliver(sink, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sink: NotificationSink, event: NotificationEvent) -> None:
        try:
            await sink.send(event)
        except Exception as e:
            self.failures += 1
            logger.warning(
                f"Notification sink {sink.name} failed for {event.type.value} "
                f"on referral {event.referral_id}: {type(e).__name__}"
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all in-flight deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
