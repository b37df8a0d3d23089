from __future__ import annotations

from enum import Enum

from shared.protocol import MESH_MAX


class RoomMode(str, Enum):
    """Media topology a room should use for its current population."""

    MESH = "mesh"
    FORWARDING = "forwarding"


def select_mode(participant_count: int, *, mesh_max: int = MESH_MAX) -> RoomMode:
    """Return the topology for a room holding ``participant_count`` callers."""

    if participant_count > mesh_max:
        return RoomMode.FORWARDING
    return RoomMode.MESH
