from eventrelay.realtime.registry import ConnectionRegistry
from eventrelay.realtime.rooms import personal_room


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_register_joins_personal_room_and_marks_online():
    registry = ConnectionRegistry()
    registration = registry.register("alice", "h1")

    assert registration.previous is None
    assert registration.personal_room == "personal:alice"
    assert registry.is_online("alice")
    assert registry.members(personal_room("alice")) == ("h1",)
    assert registry.user_for("h1") == "alice"
    assert registry.online_count() == 1


def test_last_handshake_wins_and_previous_handle_leaves_every_room():
    registry = ConnectionRegistry()
    registry.register("alice", "h1")
    registry.join_room("event:e1", "h1")
    registry.join_room("tribe:t1", "h1")

    registration = registry.register("alice", "h2")

    assert registration.replaced
    assert registration.previous == "h1"
    assert registry.handle_for("alice") == "h2"
    assert registry.rooms_of("h1") == ()
    assert registry.user_for("h1") is None
    # event and tribe rooms had only h1, so they are gone
    assert not registry.has_room("event:e1")
    assert not registry.has_room("tribe:t1")
    assert registry.members("personal:alice") == ("h2",)
    assert registry.online_count() == 1


def test_unregister_leaves_no_residual_rooms():
    registry = ConnectionRegistry()
    registry.register("alice", "h1")
    registry.register("bob", "h2")
    registry.join_room("event:e1", "h1")
    registry.join_room("event:e1", "h2")

    assert registry.unregister("alice", "h1") is True

    assert not registry.is_online("alice")
    assert registry.members("event:e1") == ("h2",)
    assert not registry.has_room("personal:alice")
    assert all("h1" not in registry.members(room) for room in ("event:e1", "personal:bob"))


def test_stale_unregister_after_reconnect_is_a_noop_for_the_user():
    registry = ConnectionRegistry()
    registry.register("alice", "h1")
    registry.register("alice", "h2")

    assert registry.unregister("alice", "h1") is False
    assert registry.is_online("alice")
    assert registry.handle_for("alice") == "h2"


def test_join_and_leave_are_idempotent():
    registry = ConnectionRegistry()
    registry.register("alice", "h1")

    assert registry.join_room("tribe:t1", "h1") is True
    assert registry.join_room("tribe:t1", "h1") is False
    assert registry.room_size("tribe:t1") == 1

    assert registry.leave_room("tribe:t1", "h1") is True
    assert registry.leave_room("tribe:t1", "h1") is False
    assert not registry.has_room("tribe:t1")


def test_leave_for_unknown_handle_is_noop():
    registry = ConnectionRegistry()
    assert registry.leave_room("event:e1", "ghost") is False
    # rooms are handle based so a join is still accepted
    assert registry.join_room("event:e1", "ghost") is True


def test_activity_window_requires_online_user():
    clock = Clock()
    registry = ConnectionRegistry(clock=clock)
    registry.register("alice", "h1")

    clock.now += 100
    assert registry.is_active("alice", within=300)
    clock.now += 400
    assert not registry.is_active("alice", within=300)

    registry.touch("alice")
    assert registry.is_active("alice", within=300)
    assert registry.last_seen("alice") == clock.now

    registry.unregister("alice")
    assert not registry.is_active("alice", within=300)


def test_stats_counts_users_connections_and_rooms():
    registry = ConnectionRegistry()
    registry.register("alice", "h1")
    registry.register("bob", "h2")
    registry.join_room("event:e1", "h1")

    assert registry.stats() == {"online_users": 2, "connections": 2, "rooms": 3}
