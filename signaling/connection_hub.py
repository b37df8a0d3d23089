from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from shared.protocol import SignalEvent, encode_event

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ConnectedSocket:
    connection_id: str
    websocket: WebSocket
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    connected_at: float = field(default_factory=lambda: time.time())
    frames_sent: int = 0
    writer_task: Optional[asyncio.Task[None]] = None

    def send(self, event: SignalEvent, data: Any) -> None:
        self.outbox.put_nowait(encode_event(event, data))


class ConnectionHub:
    """Tracks live WebSocket connections and their room groups.

    Sends never suspend the caller: frames are queued per connection and a
    writer task drains each queue in order.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, ConnectedSocket] = {}
        self._groups: Dict[str, Dict[str, None]] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        client = ConnectedSocket(connection_id=connection_id, websocket=websocket)
        client.writer_task = asyncio.create_task(self._drain(client))
        self._connections[connection_id] = client
        logger.info("Connection %s opened", connection_id)
        return connection_id

    async def disconnect(self, connection_id: str) -> bool:
        client = self._connections.pop(connection_id, None)
        if client is None:
            return False
        for room_id in list(self._groups):
            self.leave_group(connection_id, room_id)
        task = client.writer_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Connection %s closed (%d frames sent)", connection_id, client.frames_sent)
        return True

    async def close_all(self, code: int = 1001) -> None:
        for connection_id, client in list(self._connections.items()):
            try:
                if client.websocket.application_state == WebSocketState.CONNECTED:
                    await client.websocket.close(code=code)
            except Exception:
                logger.debug("Failed to close connection %s during shutdown", connection_id)
            await self.disconnect(connection_id)

    def send_to(self, connection_id: str, event: SignalEvent, data: Any) -> None:
        client = self._connections.get(connection_id)
        if client is None:
            logger.debug("Dropping %s for unknown connection %s", event.value, connection_id)
            return
        if client.writer_task is not None and client.writer_task.done():
            logger.debug("Dropping %s for %s: writer stopped", event.value, connection_id)
            return
        client.send(event, data)

    def broadcast(
        self,
        room_id: str,
        event: SignalEvent,
        data: Any,
        *,
        exclude: Optional[str] = None,
    ) -> None:
        for connection_id in self._groups.get(room_id, ()):
            if connection_id == exclude:
                continue
            self.send_to(connection_id, event, data)

    def join_group(self, connection_id: str, room_id: str) -> None:
        if connection_id not in self._connections:
            return
        self._groups.setdefault(room_id, {})[connection_id] = None

    def leave_group(self, connection_id: str, room_id: str) -> None:
        members = self._groups.get(room_id)
        if members is None:
            return
        members.pop(connection_id, None)
        if not members:
            del self._groups[room_id]

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def group_members(self, room_id: str) -> list[str]:
        return list(self._groups.get(room_id, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def _drain(self, client: ConnectedSocket) -> None:
        websocket = client.websocket
        while True:
            frame = await client.outbox.get()
            try:
                if websocket.application_state != WebSocketState.CONNECTED:
                    logger.debug("Connection %s no longer open; stopping writer", client.connection_id)
                    return
                await websocket.send_text(frame)
                client.frames_sent += 1
            except Exception:
                logger.exception("Failed to send frame to %s", client.connection_id)
                return
