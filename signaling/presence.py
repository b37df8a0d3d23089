from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from shared.protocol import SignalEvent

from .mode import RoomMode, select_mode
from .room_registry import Participant, Room, RoomRegistry
from .transport import Transport

logger = logging.getLogger(__name__)

_EVENT_LOG_LIMIT = 300


@dataclass(slots=True)
class JoinOutcome:
    room_id: str
    participant: Participant
    participant_count: int
    mode: RoomMode
    mode_changed: bool
    existing: list[Participant]
    rejoined: bool = False


@dataclass(slots=True)
class LeaveOutcome:
    room_id: str
    participant: Participant
    participant_count: int
    room_removed: bool
    mode: Optional[RoomMode] = None
    mode_changed: bool = False
    new_host: Optional[Participant] = None


class PresenceCoordinator:
    """Runs the join/leave protocol: identity, host election and room mode.

    Every method runs synchronously against the registry and only queues
    outbound frames on the transport, so each call is one atomic step on the
    event loop.
    """

    def __init__(self, registry: RoomRegistry, transport: Transport) -> None:
        self._registry = registry
        self._transport = transport
        self._event_log: Deque[dict[str, object]] = deque(maxlen=_EVENT_LOG_LIMIT)

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    def join(self, room_id: str, connection_id: str, requested_name: Optional[str] = None) -> JoinOutcome:
        self._transport.join_group(connection_id, room_id)
        room = self._registry.get_or_create(room_id)

        participant = room.get(connection_id)
        rejoined = participant is not None
        if participant is None:
            participant = Participant(
                connection_id=connection_id,
                display_name=_display_name(requested_name, room.size),
                join_sequence=room.next_join_sequence(),
                is_host=room.is_empty(),
            )
            room.add(participant)
            self._registry.bind(connection_id, room_id)
        elif requested_name and requested_name.strip():
            participant.display_name = requested_name.strip()

        mode_changed = self._refresh_mode(room)
        existing = room.others(connection_id)

        self._transport.send_to(
            connection_id,
            SignalEvent.ROOM_STATE,
            {"totalUsers": room.size, "mode": room.mode.value},
        )
        self._transport.send_to(
            connection_id,
            SignalEvent.HOST_STATUS,
            {"isHost": participant.is_host},
        )
        self._transport.send_to(
            connection_id,
            SignalEvent.EXISTING_USERS,
            [p.status().to_dict() for p in existing],
        )
        if existing and not rejoined:
            self._transport.broadcast(
                room_id,
                SignalEvent.USER_JOINED,
                {
                    "userId": connection_id,
                    "userName": participant.display_name,
                    "isHost": participant.is_host,
                },
                exclude=connection_id,
            )
        self._transport.broadcast(room_id, SignalEvent.PARTICIPANT_COUNT_CHANGED, room.size)

        logger.info(
            "%s joined room %s as %r (host=%s, users=%d, mode=%s)",
            connection_id,
            room_id,
            participant.display_name,
            participant.is_host,
            room.size,
            room.mode.value,
        )
        self._record_event(
            "user_rejoined" if rejoined else "user_joined",
            {
                "room_id": room_id,
                "connection_id": connection_id,
                "display_name": participant.display_name,
                "is_host": participant.is_host,
            },
        )
        return JoinOutcome(
            room_id=room_id,
            participant=participant,
            participant_count=room.size,
            mode=room.mode,
            mode_changed=mode_changed,
            existing=existing,
            rejoined=rejoined,
        )

    def leave(self, room_id: str, connection_id: str) -> Optional[LeaveOutcome]:
        room = self._registry.get(room_id)
        if room is None:
            return None
        participant = room.remove(connection_id)
        if participant is None:
            return None
        was_host = participant.is_host
        self._registry.unbind(connection_id, room_id)
        self._transport.leave_group(connection_id, room_id)

        self._transport.broadcast(room_id, SignalEvent.USER_LEFT, connection_id, exclude=connection_id)
        logger.info("%s (%r) left room %s", connection_id, participant.display_name, room_id)
        self._record_event(
            "user_left",
            {
                "room_id": room_id,
                "connection_id": connection_id,
                "display_name": participant.display_name,
            },
        )

        if room.is_empty():
            self._registry.remove_if_empty(room_id)
            return LeaveOutcome(
                room_id=room_id,
                participant=participant,
                participant_count=0,
                room_removed=True,
            )

        self._transport.broadcast(room_id, SignalEvent.PARTICIPANT_COUNT_CHANGED, room.size)
        # Mode is recomputed silently here; only joins report it.
        mode_changed = self._refresh_mode(room)

        new_host: Optional[Participant] = None
        if was_host:
            new_host = self._elect_host(room)

        return LeaveOutcome(
            room_id=room_id,
            participant=participant,
            participant_count=room.size,
            room_removed=False,
            mode=room.mode,
            mode_changed=mode_changed,
            new_host=new_host,
        )

    def disconnect(self, connection_id: str) -> list[LeaveOutcome]:
        """Leave every room the connection belongs to, oldest membership first."""

        outcomes: list[LeaveOutcome] = []
        for room_id in self._registry.rooms_of(connection_id):
            outcome = self.leave(room_id, connection_id)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def get_recent_events(self, limit: int = 50) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        return list(self._event_log)[-limit:]

    def _elect_host(self, room: Room) -> Optional[Participant]:
        successor = room.earliest()
        if successor is None:
            return None
        successor.is_host = True
        self._transport.send_to(successor.connection_id, SignalEvent.HOST_STATUS, {"isHost": True})
        self._transport.broadcast(
            room.room_id,
            SignalEvent.NEW_HOST,
            {"userId": successor.connection_id, "userName": successor.display_name},
        )
        logger.info("%s (%r) is now host of room %s", successor.connection_id, successor.display_name, room.room_id)
        self._record_event(
            "host_changed",
            {
                "room_id": room.room_id,
                "connection_id": successor.connection_id,
                "display_name": successor.display_name,
            },
        )
        return successor

    def _refresh_mode(self, room: Room) -> bool:
        mode = select_mode(room.size)
        if mode is room.mode:
            return False
        logger.info("Room %s switched from %s to %s mode (%d users)", room.room_id, room.mode.value, mode.value, room.size)
        room.mode = mode
        self._record_event("mode_changed", {"room_id": room.room_id, "mode": mode.value})
        return True

    def _record_event(self, event_type: str, details: dict[str, object]) -> None:
        self._event_log.append(
            {
                "type": event_type,
                "timestamp": time.time(),
                **details,
            }
        )


def _display_name(requested: Optional[str], current_size: int) -> str:
    if requested and requested.strip():
        return requested.strip()
    return f"User {current_size + 1}"
