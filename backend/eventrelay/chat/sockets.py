"""Socket.IO namespace adapting client events to the chat coordinator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import socketio

from eventrelay.errors import RelayError, ValidationError
from eventrelay.obs import logging as obs_logging
from eventrelay.obs import metrics as obs_metrics

from .service import ChatCoordinator

_LOG = logging.getLogger(__name__)


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


@dataclass(frozen=True, slots=True)
class SocketHandle:
	"""Transport handle for one Socket.IO connection."""

	sid: str
	namespace: "ChatNamespace" = field(compare=False, hash=False, repr=False)

	async def send(self, event: str, payload: object) -> None:
		await self.namespace.emit(event, payload, room=self.sid)


def _room(payload: dict) -> str:
	room_id = str(payload.get("roomId") or "").strip()
	if not room_id:
		raise ValidationError("room_id_required")
	return room_id


def _required(payload: dict, key: str) -> str:
	value = str(payload.get(key) or "").strip()
	if not value:
		raise ValidationError(f"{key}_required")
	return value


def _before(payload: dict) -> Optional[datetime]:
	raw = payload.get("before")
	if not raw:
		return None
	try:
		return datetime.fromisoformat(str(raw))
	except ValueError:
		raise ValidationError("invalid_before") from None


class ChatNamespace(socketio.AsyncNamespace):
	"""Namespace for room chat, typing, media shares and call signaling."""

	def __init__(self, coordinator: ChatCoordinator, namespace: str = "/chat") -> None:
		super().__init__(namespace)
		self.coordinator = coordinator
		self._handles: Dict[str, SocketHandle] = {}

	def handle_for(self, sid: str) -> Optional[SocketHandle]:
		return self._handles.get(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		if not user_id:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("missing user id")
		handle = SocketHandle(sid=sid, namespace=self)
		self._handles[sid] = handle
		result = await self.coordinator.connect(str(user_id), handle)
		previous = result.registration.previous
		if isinstance(previous, SocketHandle) and previous.sid != sid:
			await self.emit("session-replaced", {"userId": user_id}, room=previous.sid)
			await self.disconnect(previous.sid)
		await self.emit("chat:ack", {"ok": True, "userId": user_id}, room=sid)

	async def on_disconnect(self, sid: str, *args) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		handle = self._handles.pop(sid, None)
		if handle is not None:
			await self.coordinator.disconnect(handle)

	async def _run(self, sid: str, event: str, op: Callable[[SocketHandle], Awaitable[Any]]) -> dict:
		obs_metrics.socket_event(self.namespace, event)
		handle = self._handles.get(sid)
		if handle is None:
			return {"ok": False, "event": event, "code": "access_denied", "detail": "unauthenticated"}
		state = self.coordinator.state_of(handle)
		log_token = obs_logging.bind_context(sid=sid, user_id=state.user_id)
		try:
			data = await op(handle)
		except RelayError as exc:
			obs_metrics.inc_chat_error(event, exc.code)
			_LOG.info("chat.action_rejected", extra={"event": event, "error": exc.code})
			error = {"event": event, **exc.to_payload()}
			await self.emit("error", error, room=sid)
			return {"ok": False, **error}
		finally:
			obs_logging.reset_context(log_token)
		return {"ok": True, "data": data}

	async def on_join_room(self, sid: str, payload: dict) -> dict:
		return await self._run(sid, "join_room", lambda h: self.coordinator.join_room(h, _room(payload)))

	async def on_leave_room(self, sid: str, payload: dict) -> dict:
		return await self._run(sid, "leave_room", lambda h: self.coordinator.leave_room(h, _room(payload)))

	async def on_send_message(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"send_message",
			lambda h: self.coordinator.send_message(
				h, _room(payload), str(payload.get("content") or ""), str(payload.get("type") or "text")
			),
		)

	async def on_edit_message(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"edit_message",
			lambda h: self.coordinator.edit_message(
				h, _room(payload), _required(payload, "messageId"), str(payload.get("content") or "")
			),
		)

	async def on_delete_message(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"delete_message",
			lambda h: self.coordinator.delete_message(h, _room(payload), _required(payload, "messageId")),
		)

	async def on_react(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"react",
			lambda h: self.coordinator.react(
				h, _room(payload), _required(payload, "messageId"), _required(payload, "emoji")
			),
		)

	async def on_mark_read(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"mark_read",
			lambda h: self.coordinator.mark_read(h, _room(payload), _required(payload, "messageId")),
		)

	async def on_typing(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"typing",
			lambda h: self.coordinator.typing(h, _room(payload), bool(payload.get("isTyping", True))),
		)

	async def on_share_file(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"share_file",
			lambda h: self.coordinator.share_file(h, _room(payload), dict(payload.get("fileData") or {})),
		)

	async def on_share_voice(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"share_voice",
			lambda h: self.coordinator.share_voice(h, _room(payload), dict(payload.get("audioData") or {})),
		)

	async def on_history(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"history",
			lambda h: self.coordinator.history(
				h, _room(payload), before=_before(payload), limit=int(payload.get("limit") or 50)
			),
		)

	async def on_start_call(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"start_call",
			lambda h: self.coordinator.start_call(
				h,
				_required(payload, "targetUserId"),
				room_id=payload.get("roomId") or None,
				call_type=str(payload.get("callType") or "voice"),
			),
		)

	async def on_accept_call(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid, "accept_call", lambda h: self.coordinator.accept_call(h, _required(payload, "callId"))
		)

	async def on_reject_call(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid,
			"reject_call",
			lambda h: self.coordinator.reject_call(h, _required(payload, "callId"), payload.get("reason")),
		)

	async def on_end_call(self, sid: str, payload: dict) -> dict:
		return await self._run(sid, "end_call", lambda h: self.coordinator.end_call(h, _required(payload, "callId")))

	async def on_update_status(self, sid: str, payload: dict) -> dict:
		return await self._run(
			sid, "update_status", lambda h: self.coordinator.update_status(h, _required(payload, "status"))
		)


__all__ = ["ChatNamespace", "SocketHandle"]
