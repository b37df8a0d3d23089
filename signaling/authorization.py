from __future__ import annotations

import logging
from typing import Optional

from shared.protocol import SignalEvent

from .room_registry import RoomRegistry
from .transport import Transport

logger = logging.getLogger(__name__)

KICKED_REASON = "You have been removed from the room by the host."
KICK_DENIED_REASON = "Only the host can remove participants."


class AuthorizationGate:
    """Checks host-only actions against current room state."""

    def __init__(self, registry: RoomRegistry, transport: Transport) -> None:
        self._registry = registry
        self._transport = transport

    def is_host(self, connection_id: str, room_id: Optional[str] = None) -> bool:
        found = self._registry.find_participant(connection_id, room_id)
        return found is not None and found[1].is_host

    def request_kick(
        self,
        requester_connection_id: str,
        target_connection_id: str,
        *,
        room_id: Optional[str] = None,
    ) -> bool:
        """Ask ``target`` to leave if the requester is host.

        The notice is advisory: room state is untouched and the target is
        only removed once its own connection goes away.
        """

        if not self.is_host(requester_connection_id, room_id):
            self._transport.send_to(
                requester_connection_id,
                SignalEvent.KICK_DENIED,
                {"reason": KICK_DENIED_REASON},
            )
            logger.warning(
                "Denied kick of %s requested by non-host %s",
                target_connection_id,
                requester_connection_id,
            )
            return False

        self._transport.send_to(
            target_connection_id,
            SignalEvent.KICKED_FROM_ROOM,
            {"reason": KICKED_REASON},
        )
        logger.info("Host %s asked %s to leave", requester_connection_id, target_connection_id)
        return True
