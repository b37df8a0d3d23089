from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

from shared.protocol import ParticipantStatus

from .mode import RoomMode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Participant:
    connection_id: str
    display_name: str
    join_sequence: int
    is_host: bool = False
    is_muted: bool = False
    is_screen_sharing: bool = False
    joined_at: float = field(default_factory=lambda: time.time())

    def status(self) -> ParticipantStatus:
        return ParticipantStatus(
            user_id=self.connection_id,
            user_name=self.display_name,
            is_host=self.is_host,
            is_muted=self.is_muted,
            is_screen_sharing=self.is_screen_sharing,
        )


@dataclass(slots=True)
class Room:
    """A named group of participants sharing one call."""

    room_id: str
    mode: RoomMode = RoomMode.MESH
    participants: Dict[str, Participant] = field(default_factory=dict)
    created_at: float = field(default_factory=lambda: time.time())
    _next_sequence: int = field(default=0, repr=False)

    @property
    def size(self) -> int:
        return len(self.participants)

    def is_empty(self) -> bool:
        return not self.participants

    def next_join_sequence(self) -> int:
        self._next_sequence += 1
        return self._next_sequence

    def get(self, connection_id: str) -> Optional[Participant]:
        return self.participants.get(connection_id)

    def add(self, participant: Participant) -> None:
        self.participants[participant.connection_id] = participant

    def remove(self, connection_id: str) -> Optional[Participant]:
        return self.participants.pop(connection_id, None)

    def host(self) -> Optional[Participant]:
        for participant in self.participants.values():
            if participant.is_host:
                return participant
        return None

    def earliest(self) -> Optional[Participant]:
        """Return the remaining participant that joined first."""

        if not self.participants:
            return None
        return min(self.participants.values(), key=lambda p: p.join_sequence)

    def others(self, connection_id: str) -> list[Participant]:
        """Participants other than ``connection_id``, in join order."""

        return sorted(
            (p for p in self.participants.values() if p.connection_id != connection_id),
            key=lambda p: p.join_sequence,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "room_id": self.room_id,
            "mode": self.mode.value,
            "participant_count": self.size,
            "created_at": self.created_at,
            "participants": [
                {**p.status().to_dict(), "joinedAt": p.joined_at}
                for p in sorted(self.participants.values(), key=lambda p: p.join_sequence)
            ],
        }


class RoomRegistry:
    """Owns every live room and the connection -> room reverse index.

    Rooms are created lazily on first join and dropped as soon as the last
    participant leaves. Only this class adds or deletes room entries.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        # connection id -> room ids in the order they were joined
        self._memberships: Dict[str, Dict[str, None]] = {}

    def get_or_create(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self._rooms[room_id] = room
            logger.info("Created room %s", room_id)
        return room

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def remove_if_empty(self, room_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or not room.is_empty():
            return False
        del self._rooms[room_id]
        logger.info("Removed empty room %s", room_id)
        return True

    def participant_count(self, room_id: str) -> int:
        room = self._rooms.get(room_id)
        return room.size if room else 0

    def mode_of(self, room_id: str) -> RoomMode:
        room = self._rooms.get(room_id)
        return room.mode if room else RoomMode.MESH

    def bind(self, connection_id: str, room_id: str) -> None:
        self._memberships.setdefault(connection_id, {})[room_id] = None

    def unbind(self, connection_id: str, room_id: str) -> None:
        rooms = self._memberships.get(connection_id)
        if rooms is None:
            return
        rooms.pop(room_id, None)
        if not rooms:
            del self._memberships[connection_id]

    def rooms_of(self, connection_id: str) -> list[str]:
        return list(self._memberships.get(connection_id, ()))

    def room_for(self, connection_id: str, preferred: Optional[str] = None) -> Optional[Room]:
        """Find the room a connection belongs to without scanning all rooms.

        ``preferred`` wins when the connection is a member of it; otherwise
        the earliest joined room is returned.
        """

        rooms = self._memberships.get(connection_id)
        if not rooms:
            return None
        if preferred is not None and preferred in rooms:
            return self._rooms.get(preferred)
        return self._rooms.get(next(iter(rooms)))

    def find_participant(
        self,
        connection_id: str,
        preferred: Optional[str] = None,
    ) -> Optional[Tuple[Room, Participant]]:
        room = self.room_for(connection_id, preferred)
        if room is None:
            return None
        participant = room.get(connection_id)
        if participant is None:
            return None
        return room, participant

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    @property
    def member_count(self) -> int:
        return len(self._memberships)

    def __iter__(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def snapshot(self) -> list[dict[str, object]]:
        return [room.to_dict() for room in self._rooms.values()]

    def clear(self) -> None:
        self._rooms.clear()
        self._memberships.clear()
