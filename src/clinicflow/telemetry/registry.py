"""
Live telemetry connection registry.

One registry is created per application (in the FastAPI lifespan) and
passed to whoever needs to broadcast. There is no module-level client map.
"""

import asyncio
import hmac
import logging
import secrets
from typing import Any, Optional, Protocol

from clinicflow.models.base import utcnow
from clinicflow.notifications.dispatcher import NotificationEvent

logger = logging.getLogger(__name__)


class TelemetryConnection(Protocol):
    """Anything that can push JSON to a client (e.g. a Starlette WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionRegistry:
    """Tracks connected telemetry clients and broadcasts events to them."""

    def __init__(self, token: Optional[str] = None):
        self._token = token
        self._clients: dict[str, TelemetryConnection] = {}
        self._lock = asyncio.Lock()

    def authorize(self, token: Optional[str]) -> bool:
        """Constant-time token check. No configured token rejects everyone."""
        if not self._token or not token:
            return False
        return hmac.compare_digest(token.encode(), self._token.encode())

    async def register(self, connection: TelemetryConnection) -> str:
        client_id = secrets.token_hex(8)
        async with self._lock:
            self._clients[client_id] = connection
        await connection.send_json(
            {"type": "connection_ack", "clientId": client_id, "ts": utcnow().isoformat()}
        )
        logger.info(f"Telemetry client connected: {client_id} (total: {self.count})")
        return client_id

    async def unregister(self, client_id: str) -> None:
        async with self._lock:
            removed = self._clients.pop(client_id, None)
        if removed is not None:
            logger.info(f"Telemetry client disconnected: {client_id} (remaining: {self.count})")

    @property
    def count(self) -> int:
        return len(self._clients)

    async def broadcast(self, event: dict[str, Any]) -> int:
        """
        Send ``event`` to every client.

        Clients that fail to receive are dropped. Returns the number of
        clients that received the event.
        """
        async with self._lock:
            clients = list(self._clients.items())

        sent = 0
        dead = []
        for client_id, connection in clients:
            try:
                await connection.send_json(event)
                sent += 1
            except Exception as e:
                logger.warning(f"Telemetry send to {client_id} failed: {type(e).__name__}")
                dead.append(client_id)

        for client_id in dead:
            await self.unregister(client_id)
        if sent:
            logger.debug(f"Broadcast {event.get('type')} to {sent} client(s)")
        return sent

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for client_id, connection in clients:
            try:
                await connection.close(code=1001)
            except Exception as e:
                logger.debug(f"Closing telemetry client {client_id} failed: {type(e).__name__}")
        logger.info(f"Closed {len(clients)} telemetry client(s)")


class TelemetrySink:
    """Notification sink that mirrors workflow events to telemetry clients."""

    name = "telemetry"

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def send(self, event: NotificationEvent) -> None:
        await self.registry.broadcast(
            {
                "type": event.type.value,
                "referralId": str(event.referral_id),
                "payload": event.loggable_payload(),
                "ts": event.created_at.isoformat(),
            }
        )
