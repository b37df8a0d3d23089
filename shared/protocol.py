"""Core protocol primitives shared between the signaling server and its clients.

Browsers talk to the coordinator over a WebSocket using JSON text frames.
Every frame is an envelope ``{"event": <name>, "data": <payload>}``. This
module centralises the event names, the envelope codec and the payload
schemas so both halves of the system remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json


class SignalEvent(str, Enum):
    """Events exchanged between browsers and the coordinator."""

    # client -> server
    JOIN_ROOM = "join-room"
    SCREEN_SHARE_STATUS = "screen-share-status"
    MUTE_STATUS = "mute-status"
    KICK_USER = "kick-user"
    REQUEST_PEER_STATE = "request-peer-state"
    # both directions
    SIGNAL = "signal"
    KEY_EXCHANGE = "key-exchange"
    # server -> client
    ROOM_STATE = "room-state"
    HOST_STATUS = "host-status"
    EXISTING_USERS = "existing-users"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    NEW_HOST = "new-host"
    PARTICIPANT_COUNT_CHANGED = "participant-count-changed"
    PEER_SCREEN_SHARE_STATUS = "peer-screen-share-status"
    PEER_STREAM_REFRESH = "peer-stream-refresh"
    PEER_MUTE_STATUS = "peer-mute-status"
    KICKED_FROM_ROOM = "kicked-from-room"
    KICK_DENIED = "kick-denied"
    PEER_STATE_RESPONSE = "peer-state-response"
    ERROR = "error"


INBOUND_EVENTS = frozenset(
    {
        SignalEvent.JOIN_ROOM,
        SignalEvent.SIGNAL,
        SignalEvent.KEY_EXCHANGE,
        SignalEvent.SCREEN_SHARE_STATUS,
        SignalEvent.MUTE_STATUS,
        SignalEvent.KICK_USER,
        SignalEvent.REQUEST_PEER_STATE,
    }
)


class UnknownEventError(ValueError):
    """Raised when a frame names an event the protocol does not define."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown event {name!r}")
        self.name = name


class EventEnvelope(TypedDict):
    """Generic representation of a frame sent over the WebSocket."""

    event: str
    data: Any


def encode_event(event: SignalEvent, data: Any) -> str:
    """Serialize an event envelope to a compact JSON text frame."""

    envelope: EventEnvelope = {
        "event": event.value,
        "data": data,
    }
    return json.dumps(envelope, separators=(",", ":"))


def decode_event(frame: str | bytes) -> tuple[SignalEvent, Any]:
    """Parse a text frame into ``(event, data)``.

    Raises ``ValueError`` when the frame is not valid JSON, is not an
    envelope object, or names an event this protocol does not define.
    """

    if isinstance(frame, bytes):
        frame = frame.decode("utf-8")
    envelope = json.loads(frame)  # json.JSONDecodeError is a ValueError
    if not isinstance(envelope, dict):
        raise ValueError("event envelope must be a JSON object")
    name = envelope.get("event")
    if not isinstance(name, str) or not name:
        raise ValueError("event envelope is missing the event name")
    try:
        event = SignalEvent(name)
    except ValueError:
        raise UnknownEventError(name) from None
    return event, envelope.get("data")


@dataclass(slots=True)
class JoinRequest:
    """Payload of ``join-room``."""

    room_id: str
    user_name: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Any) -> "JoinRequest":
        # Older clients send the bare room id instead of an object.
        if isinstance(data, str):
            if not data:
                raise ValueError("join-room requires a roomId")
            return cls(room_id=data)
        if not isinstance(data, dict):
            raise ValueError("join-room payload must be an object or a room id")
        room_id = data.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            raise ValueError("join-room requires a roomId")
        user_name = data.get("userName")
        return cls(room_id=room_id, user_name=user_name if isinstance(user_name, str) else None)


@dataclass(slots=True)
class ParticipantStatus:
    """Full status of one participant as seen by other browsers."""

    user_id: str
    user_name: str
    is_host: bool
    is_muted: bool
    is_screen_sharing: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "isScreenSharing": self.is_screen_sharing,
            "isMuted": self.is_muted,
            "isHost": self.is_host,
        }


def payload_field(data: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an object payload, tolerating non-object payloads."""

    if isinstance(data, dict):
        return data.get(name, default)
    return default


MESH_MAX = 8
FORWARDING_MIN = MESH_MAX + 1

DEFAULT_SIGNALING_HOST = "0.0.0.0"
DEFAULT_SIGNALING_PORT = 5001

# Reserved for the external forwarding unit; the coordinator only reports
# the mode, it never reads these values.
FORWARDING_MEDIA_SETTINGS: Dict[str, Any] = {
    "worker": {
        "rtc_min_port": 10000,
        "rtc_max_port": 10100,
        "log_level": "warn",
    },
    "router": {
        "media_codecs": [
            {
                "kind": "audio",
                "mime_type": "audio/opus",
                "clock_rate": 48000,
                "channels": 2,
            },
            {
                "kind": "video",
                "mime_type": "video/VP8",
                "clock_rate": 90000,
                "parameters": {"x-google-start-bitrate": 1000},
            },
        ]
    },
}
