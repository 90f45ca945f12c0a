import asyncio

import pytest

from eventrelay.realtime.registry import ConnectionRegistry
from eventrelay.realtime.router import RoomRouter


class SlowHandle:
	def __init__(self) -> None:
		self.events = []

	async def send(self, event, payload):
		await asyncio.sleep(1)
		self.events.append(event)


@pytest.mark.asyncio
async def test_broadcast_skips_failed_handles_and_counts_successes(make_handle):
	registry = ConnectionRegistry()
	router = RoomRouter(registry)
	alice, bob, carol = make_handle("alice"), make_handle("bob", fail=True), make_handle("carol")
	for user, h in (("alice", alice), ("bob", bob), ("carol", carol)):
		registry.register(user, h)
		registry.join_room("event:e1", h)

	sent = await router.broadcast("event:e1", "new-message", {"id": "m1"}, exclude=alice)

	assert sent == 1
	assert alice.named("new-message") == []
	assert carol.named("new-message") == [{"id": "m1"}]


@pytest.mark.asyncio
async def test_send_timeout_counts_as_failure():
	registry = ConnectionRegistry()
	router = RoomRouter(registry, timeout=0.01)
	slow = SlowHandle()
	registry.register("alice", slow)

	assert await router.send_to_user("alice", "notification", {}) is False
	assert slow.events == []


@pytest.mark.asyncio
async def test_send_to_offline_user_returns_false():
	router = RoomRouter(ConnectionRegistry())
	assert await router.send_to_user("nobody", "notification", {}) is False


@pytest.mark.asyncio
async def test_announce_presence_reaches_everyone_but_the_user(make_handle):
	registry = ConnectionRegistry()
	router = RoomRouter(registry)
	alice, bob = make_handle("alice"), make_handle("bob")
	registry.register("alice", alice)
	registry.register("bob", bob)

	count = await router.announce_presence("alice", "away")

	assert count == 1
	assert alice.named("user-status-update") == []
	(update,) = bob.named("user-status-update")
	assert update["userId"] == "alice"
	assert update["status"] == "away"
	assert update["lastSeen"]
