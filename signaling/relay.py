from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from shared.protocol import SignalEvent

from .room_registry import Participant, RoomRegistry
from .transport import Transport

logger = logging.getLogger(__name__)


class StatusKind(str, Enum):
    MUTED = "muted"
    SCREEN_SHARING = "screen_sharing"


class MessageRelay:
    """Routes point-to-point signaling and room-wide status updates.

    Point-to-point relays do not check that sender and recipient share a
    room: the recipient id is trusted and an unknown id is dropped by the
    transport.
    """

    def __init__(self, registry: RoomRegistry, transport: Transport) -> None:
        self._registry = registry
        self._transport = transport

    def relay_signal(self, from_connection_id: str, to_connection_id: str, signal: Any) -> None:
        self._transport.send_to(
            to_connection_id,
            SignalEvent.SIGNAL,
            {"signal": signal, "from": from_connection_id},
        )
        logger.debug("Signal relayed from %s to %s", from_connection_id, to_connection_id)

    def relay_key_exchange(self, from_connection_id: str, to_connection_id: str, public_key: Any) -> None:
        self._transport.send_to(
            to_connection_id,
            SignalEvent.KEY_EXCHANGE,
            {"publicKey": public_key, "from": from_connection_id},
        )
        logger.debug("Key material relayed from %s to %s", from_connection_id, to_connection_id)

    def broadcast_status(
        self,
        connection_id: str,
        kind: StatusKind,
        value: bool,
        *,
        room_id: Optional[str] = None,
    ) -> Optional[Participant]:
        """Apply a mute or screen-share change and echo it to the whole room.

        The sender receives its own update too. Returns the updated
        participant, or ``None`` when the connection is in no room.
        """

        found = self._registry.find_participant(connection_id, room_id)
        if found is None:
            logger.debug("Ignoring %s status from %s: not in a room", kind.value, connection_id)
            return None
        room, participant = found

        if kind is StatusKind.MUTED:
            participant.is_muted = value
            self._transport.broadcast(
                room.room_id,
                SignalEvent.PEER_MUTE_STATUS,
                {
                    "userId": connection_id,
                    "userName": participant.display_name,
                    "isMuted": value,
                },
            )
        else:
            participant.is_screen_sharing = value
            self._transport.broadcast(
                room.room_id,
                SignalEvent.PEER_SCREEN_SHARE_STATUS,
                {
                    "userId": connection_id,
                    "userName": participant.display_name,
                    "isSharing": value,
                },
            )
            self._transport.broadcast(
                room.room_id,
                SignalEvent.PEER_STREAM_REFRESH,
                {"userId": connection_id},
            )
        logger.debug("%s set %s=%s in room %s", connection_id, kind.value, value, room.room_id)
        return participant

    def send_peer_state(self, requester_connection_id: str, target_connection_id: str) -> bool:
        """Send the requester a full status snapshot of one peer, if it is in a room."""

        found = self._registry.find_participant(target_connection_id)
        if found is None:
            logger.debug("Peer state for %s requested by %s: not found", target_connection_id, requester_connection_id)
            return False
        _, participant = found
        self._transport.send_to(
            requester_connection_id,
            SignalEvent.PEER_STATE_RESPONSE,
            {
                "userId": participant.connection_id,
                "userName": participant.display_name,
                "isMuted": participant.is_muted,
                "isScreenSharing": participant.is_screen_sharing,
                "isHost": participant.is_host,
            },
        )
        return True
