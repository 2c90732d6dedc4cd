from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from liveresearch.services.runner import RunnerManager

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """Track live WebSocket connections by server-minted client id."""

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a socket, register it and push the handshake frame."""

        await websocket.accept()
        client_id = uuid.uuid4().hex
        async with self._lock:
            self._connections[client_id] = websocket
        await websocket.send_json({"clientId": client_id})
        logger.info("Client %s connected", client_id)
        return client_id

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            self._connections.pop(client_id, None)

    def is_connected(self, client_id: str) -> bool:
        return client_id in self._connections

    async def send(self, client_id: str, payload: dict) -> bool:
        """Push one JSON frame; stale sockets are dropped and reported as gone."""

        websocket: Optional[WebSocket] = self._connections.get(client_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Dropping client %s after send failure: %s", client_id, exc)
            await self.disconnect(client_id)
            return False
        return True

    @property
    def client_ids(self) -> list[str]:
        return list(self._connections)


def get_connection_manager(websocket: WebSocket) -> ConnectionManager:
    """Dependency to access the connection manager from app state."""

    return websocket.app.state.connection_manager


def get_ws_runner_manager(websocket: WebSocket) -> RunnerManager:
    """Dependency to access the runner manager from a WebSocket scope."""

    return websocket.app.state.runner_manager


@router.websocket("/ws")
async def ws_client(
    websocket: WebSocket,
    manager: ConnectionManager = Depends(get_connection_manager),
    runner: RunnerManager = Depends(get_ws_runner_manager),
) -> None:
    """WebSocket endpoint delivering progress events to one client."""

    client_id = await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(client_id)
        cancelled = await runner.cancel_client(client_id)
        logger.info("Client %s disconnected, cancelled %s run(s)", client_id, cancelled)
