from __future__ import annotations

import logging
from itertools import count
from typing import Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .models import Conversation

logger = logging.getLogger(__name__)

_connection_counter = count(1)


class PushConnection(Protocol):
    connection_id: str

    def is_ready(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class WebSocketPushConnection:
    """Push connection backed by a FastAPI websocket.

    Liveness is protocol-level: the server started by ``inbox-server`` pings
    every peer once per probe interval and drops any that miss the pong, which
    ends the receive loop in ``api.push_channel``.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.connection_id = f"push_{next(_connection_counter):06d}"
        self._websocket = websocket

    def is_ready(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def close(self) -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close(code=1001)
        except RuntimeError:
            logger.debug("push connection %s already closed", self.connection_id)


class UpdateBroadcaster:
    def __init__(self) -> None:
        self._connections: dict[str, PushConnection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, connection: PushConnection) -> None:
        self._connections[connection.connection_id] = connection
        logger.info("push connection %s opened (%d active)", connection.connection_id, len(self._connections))

    def unregister(self, connection: PushConnection) -> None:
        if self._connections.pop(connection.connection_id, None) is not None:
            logger.info("push connection %s closed (%d active)", connection.connection_id, len(self._connections))

    async def broadcast(self, conversation: Conversation) -> int:
        """Send the conversation to every ready connection; returns the delivery count."""
        payload = conversation.model_dump_json()
        delivered = 0
        for connection in list(self._connections.values()):
            if not connection.is_ready():
                continue
            try:
                await connection.send_text(payload)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.info("dropping push connection %s after failed send: %s", connection.connection_id, exc)
                self.unregister(connection)
                continue
            delivered += 1
        return delivered

    async def close_all(self) -> None:
        for connection in list(self._connections.values()):
            self.unregister(connection)
            await connection.close()
