from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Optional, Sequence

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from shared.protocol import (
    INBOUND_EVENTS,
    JoinRequest,
    SignalEvent,
    UnknownEventError,
    decode_event,
    payload_field,
)

from .authorization import AuthorizationGate
from .connection_hub import ConnectionHub
from .presence import PresenceCoordinator
from .relay import MessageRelay, StatusKind
from .room_registry import RoomRegistry

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer: deque[dict[str, object]] = deque(maxlen=_LOG_BUFFER_LIMIT)


class _InMemoryLogHandler(logging.Handler):
    """Collect recent log records for the diagnostics endpoint."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        try:
            message = self.format(record)
        except Exception:
            message = record.getMessage()
        _log_buffer.append(
            {
                "message": message,
                "level": record.levelname.lower(),
                "logger": record.name,
                "timestamp": record.created,
            }
        )


def _ensure_log_handler() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler, _InMemoryLogHandler) for handler in root_logger.handlers):
        return
    handler = _InMemoryLogHandler(level=logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _get_log_tail(limit: int = 50) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    return list(_log_buffer)[-limit:]


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _required_str(data: Any, name: str, event: SignalEvent) -> str:
    value = _optional_str(payload_field(data, name))
    if value is None:
        raise ValueError(f"{event.value} requires {name}")
    return value


def _flag(data: Any, name: str, event: SignalEvent) -> bool:
    value = payload_field(data, name, False)
    if not isinstance(value, bool):
        raise ValueError(f"{event.value} requires a boolean {name}")
    return value


class SignalingServer:
    """WebSocket signaling endpoint plus health and diagnostics routes."""

    def __init__(
        self,
        *,
        registry: Optional[RoomRegistry] = None,
        hub: Optional[ConnectionHub] = None,
        cors_origins: Optional[Sequence[str]] = None,
    ) -> None:
        self._registry = registry or RoomRegistry()
        self._hub = hub or ConnectionHub()
        self._presence = PresenceCoordinator(self._registry, self._hub)
        self._relay = MessageRelay(self._registry, self._hub)
        self._gate = AuthorizationGate(self._registry, self._hub)
        self._app = FastAPI(title="Room signaling coordinator")
        self._app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cors_origins or ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        _ensure_log_handler()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def hub(self) -> ConnectionHub:
        return self._hub

    @property
    def presence(self) -> PresenceCoordinator:
        return self._presence

    def _configure_routes(self) -> None:
        @self._app.websocket("/ws")
        async def signaling_socket(websocket: WebSocket) -> None:
            connection_id = await self._hub.connect(websocket)
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    frame = message.get("text")
                    if frame is None:
                        frame = message.get("bytes")
                    if frame is None:
                        continue
                    self.handle_frame(connection_id, frame)
            except WebSocketDisconnect:
                pass
            except Exception as exc:
                logger.exception("Error while handling connection %s: %s", connection_id, exc)
            finally:
                self._presence.disconnect(connection_id)
                await self._hub.disconnect(connection_id)

        @self._app.get("/health")
        async def health() -> dict:
            return {
                "status": "ok",
                "roomCount": self._registry.room_count,
                "activeConnections": self._hub.connection_count,
            }

        @self._app.get("/api/state")
        async def state() -> dict:
            return {
                "rooms": self._registry.snapshot(),
                "roomCount": self._registry.room_count,
                "activeConnections": self._hub.connection_count,
                "events": self._presence.get_recent_events(100),
                "log_tail": _get_log_tail(40),
                "timestamp": time.time(),
            }

    def handle_frame(self, connection_id: str, frame: str | bytes) -> None:
        """Decode one inbound frame and run the matching operation."""

        try:
            event, data = decode_event(frame)
        except UnknownEventError as exc:
            logger.debug("Unhandled event %s from %s", exc.name, connection_id)
            self._send_error(connection_id, str(exc), "unknown_event")
            return
        except ValueError as exc:
            logger.warning("Malformed frame from %s: %s", connection_id, exc)
            self._send_error(connection_id, "Malformed event", "bad_request")
            return

        if event not in INBOUND_EVENTS:
            logger.debug("Client %s sent server-only event %s", connection_id, event.value)
            self._send_error(connection_id, f"unexpected event {event.value!r}", "unknown_event")
            return

        try:
            self.handle_event(connection_id, event, data)
        except ValueError as exc:
            logger.warning("Rejected %s from %s: %s", event.value, connection_id, exc)
            self._send_error(connection_id, str(exc), "bad_request")
        except Exception:
            logger.exception("Failed to handle %s from %s", event.value, connection_id)

    def handle_event(self, connection_id: str, event: SignalEvent, data: Any) -> None:
        if event == SignalEvent.JOIN_ROOM:
            request = JoinRequest.from_payload(data)
            self._presence.join(request.room_id, connection_id, request.user_name)
            return

        if event == SignalEvent.SIGNAL:
            target = _required_str(data, "to", event)
            self._relay.relay_signal(connection_id, target, payload_field(data, "signal"))
            return

        if event == SignalEvent.KEY_EXCHANGE:
            target = _required_str(data, "to", event)
            self._relay.relay_key_exchange(connection_id, target, payload_field(data, "publicKey"))
            return

        if event == SignalEvent.SCREEN_SHARE_STATUS:
            self._relay.broadcast_status(
                connection_id,
                StatusKind.SCREEN_SHARING,
                _flag(data, "isSharing", event),
                room_id=_optional_str(payload_field(data, "roomId")),
            )
            return

        if event == SignalEvent.MUTE_STATUS:
            self._relay.broadcast_status(
                connection_id,
                StatusKind.MUTED,
                _flag(data, "isMuted", event),
                room_id=_optional_str(payload_field(data, "roomId")),
            )
            return

        if event == SignalEvent.KICK_USER:
            target = _required_str(data, "userIdToKick", event)
            self._gate.request_kick(
                connection_id,
                target,
                room_id=_optional_str(payload_field(data, "roomId")),
            )
            return

        if event == SignalEvent.REQUEST_PEER_STATE:
            target = _required_str(data, "peerId", event)
            self._relay.send_peer_state(connection_id, target)
            return

        logger.debug("Unhandled event %s from %s", event.value, connection_id)

    def _send_error(self, connection_id: str, reason: str, code: str) -> None:
        self._hub.send_to(connection_id, SignalEvent.ERROR, {"reason": reason, "code": code})


class SignalingServerRunner:
    """Background task helper for running the signaling app under uvicorn."""

    def __init__(self, server: SignalingServer, *, host: str, port: int, log_level: str = "info") -> None:
        self._signaling = server
        self._host = host
        self._port = port
        self._log_level = log_level
        self._server: Optional[Any] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def task(self) -> Optional[asyncio.Task[None]]:
        return self._task

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(
            self._signaling.app,
            host=self._host,
            port=self._port,
            log_level=self._log_level,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Signaling server listening on ws://%s:%s/ws", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        await self._signaling.hub.close_all()
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
