from typing import Any, Optional

from shared.protocol import SignalEvent
from signaling.mode import RoomMode
from signaling.presence import PresenceCoordinator
from signaling.room_registry import RoomRegistry


class RecordingTransport:
    """Transport double that expands broadcasts into per-recipient deliveries."""

    def __init__(self) -> None:
        self.groups: dict[str, list[str]] = {}
        self.sent: list[tuple[str, SignalEvent, Any]] = []

    def send_to(self, connection_id: str, event: SignalEvent, data: Any) -> None:
        self.sent.append((connection_id, event, data))

    def broadcast(self, room_id: str, event: SignalEvent, data: Any, *, exclude: Optional[str] = None) -> None:
        for connection_id in self.groups.get(room_id, []):
            if connection_id != exclude:
                self.sent.append((connection_id, event, data))

    def join_group(self, connection_id: str, room_id: str) -> None:
        members = self.groups.setdefault(room_id, [])
        if connection_id not in members:
            members.append(connection_id)

    def leave_group(self, connection_id: str, room_id: str) -> None:
        members = self.groups.get(room_id, [])
        if connection_id in members:
            members.remove(connection_id)

    def received(self, connection_id: str, event: Optional[SignalEvent] = None) -> list[Any]:
        return [
            data
            for recipient, sent_event, data in self.sent
            if recipient == connection_id and (event is None or sent_event == event)
        ]

    def events_for(self, connection_id: str) -> list[SignalEvent]:
        return [event for recipient, event, _ in self.sent if recipient == connection_id]


def make_coordinator() -> tuple[PresenceCoordinator, RoomRegistry, RecordingTransport]:
    registry = RoomRegistry()
    transport = RecordingTransport()
    return PresenceCoordinator(registry, transport), registry, transport


def assert_single_host(registry: RoomRegistry) -> None:
    for room in registry:
        assert not room.is_empty()
        assert sum(1 for p in room.participants.values() if p.is_host) == 1


def test_first_joiner_is_host_and_triggers_no_user_joined() -> None:
    coordinator, registry, transport = make_coordinator()

    outcome = coordinator.join("r1", "a", None)

    assert outcome.participant.is_host is True
    assert outcome.participant.display_name == "User 1"
    assert transport.events_for("a") == [
        SignalEvent.ROOM_STATE,
        SignalEvent.HOST_STATUS,
        SignalEvent.EXISTING_USERS,
        SignalEvent.PARTICIPANT_COUNT_CHANGED,
    ]
    assert transport.received("a", SignalEvent.ROOM_STATE) == [{"totalUsers": 1, "mode": "mesh"}]
    assert transport.received("a", SignalEvent.HOST_STATUS) == [{"isHost": True}]
    assert transport.received("a", SignalEvent.EXISTING_USERS) == [[]]
    assert not [s for s in transport.sent if s[1] == SignalEvent.USER_JOINED]
    assert_single_host(registry)


def test_second_joiner_gets_snapshot_and_others_are_notified() -> None:
    coordinator, registry, transport = make_coordinator()
    coordinator.join("r1", "a", "Ada")
    transport.sent.clear()

    coordinator.join("r1", "b", "  Bob  ")

    assert transport.events_for("b") == [
        SignalEvent.ROOM_STATE,
        SignalEvent.HOST_STATUS,
        SignalEvent.EXISTING_USERS,
        SignalEvent.PARTICIPANT_COUNT_CHANGED,
    ]
    assert transport.received("b", SignalEvent.HOST_STATUS) == [{"isHost": False}]
    (existing,) = transport.received("b", SignalEvent.EXISTING_USERS)
    assert existing == [
        {"userId": "a", "userName": "Ada", "isScreenSharing": False, "isMuted": False, "isHost": True}
    ]
    assert transport.received("a", SignalEvent.USER_JOINED) == [{"userId": "b", "userName": "Bob", "isHost": False}]
    assert transport.received("b", SignalEvent.USER_JOINED) == []
    assert transport.received("a", SignalEvent.PARTICIPANT_COUNT_CHANGED) == [2]
    assert transport.received("b", SignalEvent.PARTICIPANT_COUNT_CHANGED) == [2]
    assert_single_host(registry)


def test_existing_users_carry_current_status_and_exclude_joiner() -> None:
    coordinator, registry, transport = make_coordinator()
    coordinator.join("r1", "a", None)
    coordinator.join("r1", "b", None)
    registry.get("r1").get("b").is_muted = True
    registry.get("r1").get("a").is_screen_sharing = True

    coordinator.join("r1", "c", None)

    (existing,) = transport.received("c", SignalEvent.EXISTING_USERS)
    assert [entry["userId"] for entry in existing] == ["a", "b"]
    assert existing[0]["isScreenSharing"] is True
    assert existing[1]["isMuted"] is True
    assert all(entry["userId"] != "c" for entry in existing)


def test_mode_switches_to_forwarding_above_eight() -> None:
    coordinator, registry, transport = make_coordinator()
    for index in range(8):
        outcome = coordinator.join("big", f"c{index}", None)
    assert outcome.mode is RoomMode.MESH
    assert registry.get("big").mode is RoomMode.MESH

    outcome = coordinator.join("big", "c8", None)
    assert outcome.mode is RoomMode.FORWARDING
    assert outcome.mode_changed is True
    assert transport.received("c8", SignalEvent.ROOM_STATE) == [{"totalUsers": 9, "mode": "forwarding"}]

    transport.sent.clear()
    leave = coordinator.leave("big", "c3")
    assert leave.mode is RoomMode.MESH
    assert leave.mode_changed is True
    assert registry.get("big").mode is RoomMode.MESH
    # Leaving recomputes mode without announcing it.
    assert not [s for s in transport.sent if s[1] == SignalEvent.ROOM_STATE]


def test_leave_of_unknown_room_or_participant_is_noop() -> None:
    coordinator, registry, transport = make_coordinator()
    assert coordinator.leave("missing", "a") is None

    coordinator.join("r1", "a", None)
    transport.sent.clear()
    assert coordinator.leave("r1", "ghost") is None
    assert transport.sent == []
    assert registry.participant_count("r1") == 1


def test_host_migrates_to_earliest_survivor() -> None:
    coordinator, registry, transport = make_coordinator()
    for connection_id in ("a", "b", "c", "d"):
        coordinator.join("r1", connection_id, None)
    transport.sent.clear()

    outcome = coordinator.leave("r1", "a")

    assert outcome.new_host.connection_id == "b"
    assert registry.get("r1").get("b").is_host is True
    assert transport.received("b", SignalEvent.HOST_STATUS) == [{"isHost": True}]
    new_host_events = [s for s in transport.sent if s[1] == SignalEvent.NEW_HOST]
    assert {recipient for recipient, _, _ in new_host_events} == {"b", "c", "d"}
    assert all(data == {"userId": "b", "userName": "User 2"} for _, _, data in new_host_events)
    assert len([s for s in transport.sent if s[1] == SignalEvent.HOST_STATUS]) == 1
    assert transport.received("c", SignalEvent.USER_LEFT) == ["a"]
    assert transport.received("a") == []
    assert_single_host(registry)


def test_non_host_leave_keeps_host() -> None:
    coordinator, registry, transport = make_coordinator()
    for connection_id in ("a", "b", "c"):
        coordinator.join("r1", connection_id, None)
    transport.sent.clear()

    outcome = coordinator.leave("r1", "b")

    assert outcome.new_host is None
    assert registry.get("r1").host().connection_id == "a"
    assert not [s for s in transport.sent if s[1] in (SignalEvent.NEW_HOST, SignalEvent.HOST_STATUS)]
    assert transport.received("a", SignalEvent.PARTICIPANT_COUNT_CHANGED) == [2]


def test_last_leave_removes_room_without_further_broadcasts() -> None:
    coordinator, registry, transport = make_coordinator()
    coordinator.join("r1", "a", None)
    transport.sent.clear()

    outcome = coordinator.leave("r1", "a")

    assert outcome.room_removed is True
    assert "r1" not in registry
    assert transport.sent == []
    assert registry.room_for("a") is None


def test_three_user_scenario() -> None:
    coordinator, registry, transport = make_coordinator()
    names = [coordinator.join("r1", cid, None).participant.display_name for cid in ("A", "B", "C")]

    assert names == ["User 1", "User 2", "User 3"]
    assert registry.get("r1").host().connection_id == "A"

    coordinator.disconnect("A")
    assert registry.get("r1").host().connection_id == "B"
    assert_single_host(registry)

    coordinator.disconnect("B")
    assert registry.get("r1").host().connection_id == "C"
    coordinator.disconnect("C")
    assert "r1" not in registry
    assert registry.room_count == 0


def test_default_names_follow_current_size_and_may_repeat() -> None:
    coordinator, _, _ = make_coordinator()
    coordinator.join("r1", "a", None)
    coordinator.join("r1", "b", None)
    coordinator.leave("r1", "a")

    outcome = coordinator.join("r1", "c", "")

    assert outcome.participant.display_name == "User 2"


def test_repeated_join_refreshes_without_duplicate_membership() -> None:
    coordinator, registry, transport = make_coordinator()
    coordinator.join("r1", "a", None)
    coordinator.join("r1", "b", None)
    transport.sent.clear()

    outcome = coordinator.join("r1", "a", "Ada")

    assert outcome.rejoined is True
    assert outcome.participant.is_host is True
    assert outcome.participant.display_name == "Ada"
    assert registry.participant_count("r1") == 2
    assert transport.received("b", SignalEvent.USER_JOINED) == []
    assert transport.received("a", SignalEvent.HOST_STATUS) == [{"isHost": True}]
    assert_single_host(registry)


def test_disconnect_leaves_every_room() -> None:
    coordinator, registry, _ = make_coordinator()
    coordinator.join("r1", "a", None)
    coordinator.join("r2", "a", None)
    coordinator.join("r2", "b", None)

    outcomes = coordinator.disconnect("a")

    assert [o.room_id for o in outcomes] == ["r1", "r2"]
    assert "r1" not in registry
    assert registry.get("r2").host().connection_id == "b"


def test_events_are_recorded_for_diagnostics() -> None:
    coordinator, _, _ = make_coordinator()
    coordinator.join("r1", "a", None)
    coordinator.join("r1", "b", None)
    coordinator.leave("r1", "a")

    types = [event["type"] for event in coordinator.get_recent_events()]
    assert types == ["user_joined", "user_joined", "user_left", "host_changed"]
    assert coordinator.get_recent_events(limit=0) == []
