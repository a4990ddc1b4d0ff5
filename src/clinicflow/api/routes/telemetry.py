"""
Live telemetry websocket.

Clients authenticate with ``?token=``; the connection registry lives on
``app.state`` and is shared with the notification dispatcher.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from clinicflow.api.deps import Registry

router = APIRouter()

logger = logging.getLogger(__name__)

UNAUTHORIZED_CLOSE_CODE = 4001


@router.websocket("/ws")
async def telemetry_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    registry = websocket.app.state.telemetry
    await websocket.accept()
    if not registry.authorize(token):
        logger.warning("Unauthorized telemetry connection attempt")
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason="Unauthorized")
        return

    client_id = await registry.register(websocket)
    try:
        while True:
            # Clients only listen; inbound messages are ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await registry.unregister(client_id)


@router.get("/clients")
async def connected_clients(registry: Registry):
    return {"connected_clients": registry.count}
