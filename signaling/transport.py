from __future__ import annotations

from typing import Any, Optional, Protocol

from shared.protocol import SignalEvent


class Transport(Protocol):
    """What the coordinator needs from the messaging layer.

    Sends are fire-and-forget: they queue the frame and return without
    suspending, so a core operation never yields mid-mutation.
    """

    def send_to(self, connection_id: str, event: SignalEvent, data: Any) -> None:
        ...

    def broadcast(
        self,
        room_id: str,
        event: SignalEvent,
        data: Any,
        *,
        exclude: Optional[str] = None,
    ) -> None:
        ...

    def join_group(self, connection_id: str, room_id: str) -> None:
        ...

    def leave_group(self, connection_id: str, room_id: str) -> None:
        ...
