from unittest.mock import AsyncMock

import pytest
import socketio

from eventrelay.chat.sockets import ChatNamespace


def _scope(user_id: str | None) -> dict:
	headers = [(b"x-user-id", user_id.encode())] if user_id else []
	return {"asgi.scope": {"headers": headers}}


def _namespace(runtime) -> ChatNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = ChatNamespace(runtime.coordinator)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.disconnect = AsyncMock()
	return namespace


def _emitted(namespace, event: str, sid: str) -> list:
	return [
		call.args[1]
		for call in namespace.emit.await_args_list
		if call.args[0] == event and call.kwargs.get("room") == sid
	]


@pytest.mark.asyncio
async def test_connect_requires_user(runtime):
	namespace = _namespace(runtime)

	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", _scope(None))


@pytest.mark.asyncio
async def test_connect_registers_and_acks(runtime):
	namespace = _namespace(runtime)

	await namespace.trigger_event("connect", "sid-1", _scope("alice"))

	assert runtime.registry.is_online("alice")
	assert _emitted(namespace, "chat:ack", "sid-1") == [{"ok": True, "userId": "alice"}]


@pytest.mark.asyncio
async def test_second_connection_replaces_first(runtime):
	namespace = _namespace(runtime)
	await namespace.trigger_event("connect", "sid-1", _scope("alice"))

	await namespace.trigger_event("connect", "sid-2", _scope("alice"))

	assert _emitted(namespace, "session-replaced", "sid-1") == [{"userId": "alice"}]
	namespace.disconnect.assert_awaited_once_with("sid-1")
	assert runtime.registry.handle_for("alice") == namespace.handle_for("sid-2")


@pytest.mark.asyncio
async def test_room_message_round_trip_and_error_reporting(runtime):
	runtime.access.add_event("e1", host_id="alice", attendees=["bob"])
	namespace = _namespace(runtime)
	await namespace.trigger_event("connect", "sid-a", _scope("alice"))
	await namespace.trigger_event("connect", "sid-b", _scope("bob"))
	await namespace.trigger_event("join_room", "sid-a", {"roomId": "event:e1"})
	await namespace.trigger_event("join_room", "sid-b", {"roomId": "event:e1"})

	ack = await namespace.trigger_event("send_message", "sid-a", {"roomId": "event:e1", "content": "hey"})

	assert ack["ok"] is True
	assert _emitted(namespace, "new-message", "sid-b")[0]["content"] == "hey"

	denied = await namespace.trigger_event("edit_message", "sid-b", {
		"roomId": "event:e1",
		"messageId": ack["data"]["messageId"],
		"content": "mine now",
	})

	assert denied["ok"] is False
	assert denied["code"] == "forbidden"
	# errors only reach the client that caused them
	assert _emitted(namespace, "error", "sid-b")[0]["event"] == "edit_message"
	assert _emitted(namespace, "error", "sid-a") == []


@pytest.mark.asyncio
async def test_disconnect_unregisters(runtime):
	namespace = _namespace(runtime)
	await namespace.trigger_event("connect", "sid-1", _scope("alice"))

	await namespace.trigger_event("disconnect", "sid-1")

	assert not runtime.registry.is_online("alice")
	assert namespace.handle_for("sid-1") is None


@pytest.mark.asyncio
async def test_events_from_unknown_sid_are_rejected(runtime):
	namespace = _namespace(runtime)

	result = await namespace.trigger_event("join_room", "ghost", {"roomId": "event:e1"})

	assert result["ok"] is False
	assert result["detail"] == "unauthenticated"
