"""Chat session coordinator: runs session transitions and carries out their effects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, Optional

from eventrelay.errors import AccessDenied, Forbidden, NotFound, RelayError, UserUnavailable, ValidationError
from eventrelay.notifications.offline_queue import OfflineQueue
from eventrelay.obs import metrics as obs_metrics
from eventrelay.realtime.registry import ConnectionRegistry, Registration
from eventrelay.realtime.rooms import PERSONAL, RoomRef
from eventrelay.realtime.router import RoomRouter
from eventrelay.settings import settings

from . import session as sm
from .access import AccessControl, verify_access
from .calls import CallBook
from .media import MediaProcessor, UploadedMediaProcessor
from .models import (
	CALL_ACCEPTED,
	CALL_ENDED,
	CALL_REJECTED,
	MESSAGE_TYPES,
	PRESENCE_STATUSES,
	MediaReference,
	Message,
)
from .repo import MessageRepository

_LOG = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _signed_in(state: sm.SessionState) -> str:
	if state.user_id is None:
		raise AccessDenied("unauthenticated")
	return state.user_id


@dataclass(slots=True)
class ConnectResult:
	registration: Registration
	offline_notifications: List[dict] = field(default_factory=list)


class ChatCoordinator:
	"""Turns client actions into persisted records and fan-out events.

	One ``SessionState`` is kept per transport handle. Every public method builds
	an action, runs it through ``session.transition`` and interprets the effects.
	Rejections surface as ``RelayError`` for the caller to report to the
	originating client only.
	"""

	def __init__(
		self,
		*,
		registry: ConnectionRegistry,
		router: RoomRouter,
		repository: MessageRepository,
		access: AccessControl,
		media: MediaProcessor | None = None,
		offline_queue: OfflineQueue | None = None,
		calls: CallBook | None = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self.registry = registry
		self.router = router
		self.repository = repository
		self.access = access
		self.media = media or UploadedMediaProcessor()
		self.offline_queue = offline_queue
		self.calls = calls or CallBook()
		self._clock = clock
		self._sessions: Dict[Hashable, sm.SessionState] = {}

	# --- session plumbing ----------------------------------------------------
	def state_of(self, handle: Hashable) -> sm.SessionState:
		return self._sessions.get(handle, sm.initial_state())

	def _user(self, handle: Hashable) -> str:
		return _signed_in(self.state_of(handle))

	def _is_live(self, handle: Hashable) -> bool:
		state = self._sessions.get(handle)
		return state is not None and state.phase != sm.DISCONNECTED

	async def handle(self, handle: Hashable, action: sm.Action) -> Any:
		"""Run ``action`` for ``handle``; returns the result of the performed operation."""
		state = self.state_of(handle)
		new_state, effects = sm.transition(state, action)
		if new_state.phase == sm.DISCONNECTED:
			self._sessions.pop(handle, None)
		elif new_state != state:
			self._sessions[handle] = new_state
		result: Any = None
		for effect in effects:
			result = await self._apply(handle, new_state, effect)
		return result

	async def _apply(self, handle: Hashable, state: sm.SessionState, effect: sm.Effect) -> Any:
		if isinstance(effect, sm.Reject):
			raise effect.error
		if isinstance(effect, sm.Register):
			return self._register(effect.user_id, handle)
		if isinstance(effect, sm.Unregister):
			return await self._unregister(effect.user_id, handle)
		if isinstance(effect, sm.VerifyAccess):
			user_id = _signed_in(state)
			try:
				await verify_access(self.access, user_id, RoomRef.parse(effect.room_id))
			except RelayError as exc:
				obs_metrics.inc_chat_error("join_room", exc.code)
				return await self.handle(handle, sm.JoinDenied(effect.room_id, exc))
			return await self.handle(handle, sm.JoinApproved(effect.room_id))
		if isinstance(effect, sm.EnterRoom):
			return await self._enter_room(handle, state, effect.room_id)
		if isinstance(effect, sm.ExitRoom):
			return await self._exit_room(handle, state, effect.room_id)
		if isinstance(effect, sm.Perform):
			return await self._perform(handle, _signed_in(state), effect.action)
		raise TypeError(f"unknown effect {effect!r}")

	def _register(self, user_id: str, handle: Hashable) -> Registration:
		registration = self.registry.register(user_id, handle)
		if registration.previous is not None:
			# the replaced connection gets no further traffic
			self._sessions.pop(registration.previous, None)
		return registration

	async def _unregister(self, user_id: str, handle: Hashable) -> bool:
		removed = self.registry.unregister(user_id, handle)
		if not removed:
			return False
		await self.router.announce_presence(user_id, "offline")
		now = self._clock()
		for call in self.calls.active_for(user_id):
			ended = self.calls.advance(call.id, user_id, CALL_ENDED, now=now, reason="disconnected")
			obs_metrics.inc_call_transition(CALL_ENDED)
			await self.router.send_to_user(ended.peer_of(user_id), "call-ended", ended.to_dict())
		return True

	async def _enter_room(self, handle: Hashable, state: sm.SessionState, room_id: str) -> dict:
		user_id = _signed_in(state)
		newly_joined = self.registry.join_room(room_id, handle)
		if newly_joined:
			await self.router.broadcast(
				room_id,
				"user-joined",
				{"userId": user_id, "roomId": room_id},
				exclude=handle,
			)
		payload = {"roomId": room_id, "members": self.registry.room_size(room_id)}
		await self.router.send_to_handle(handle, "joined-room", payload)
		return payload

	async def _exit_room(self, handle: Hashable, state: sm.SessionState, room_id: str) -> dict:
		user_id = state.user_id or self.registry.user_for(handle)
		if self.registry.leave_room(room_id, handle):
			await self.router.broadcast(room_id, "user-left", {"userId": user_id, "roomId": room_id})
		return {"roomId": room_id}

	async def _perform(self, handle: Hashable, user_id: str, action: sm.Action) -> Any:
		self.registry.touch(user_id)
		if isinstance(action, sm.SendMessage):
			return await self._send_message(handle, user_id, action)
		if isinstance(action, sm.EditMessage):
			return await self._edit_message(user_id, action)
		if isinstance(action, sm.DeleteMessage):
			return await self._delete_message(user_id, action)
		if isinstance(action, sm.React):
			return await self._react(user_id, action)
		if isinstance(action, sm.MarkRead):
			return await self._mark_read(user_id, action)
		if isinstance(action, sm.Typing):
			await self.router.broadcast(
				action.room_id,
				"user-typing",
				{"userId": user_id, "roomId": action.room_id, "isTyping": bool(action.is_typing)},
				exclude=handle,
			)
			return None
		if isinstance(action, sm.ShareFile):
			reference = await self.media.process_file(user_id, action.payload)
			kind = "image" if reference.mime_type.startswith("image/") else "file"
			return await self._persist_and_route(
				handle, user_id, action.room_id, kind, reference.name, "new-file-message", reference
			)
		if isinstance(action, sm.ShareVoice):
			reference = await self.media.process_voice(user_id, action.payload)
			return await self._persist_and_route(
				handle, user_id, action.room_id, "voice", reference.name, "new-voice-message", reference
			)
		if isinstance(action, sm.History):
			limit = max(1, min(int(action.limit), settings.history_page_max))
			messages = await self.repository.list_room(action.room_id, before=action.before, limit=limit)
			return [message.to_dict() for message in messages]
		if isinstance(action, sm.StartCall):
			return await self._start_call(handle, user_id, action)
		if isinstance(action, (sm.AcceptCall, sm.RejectCall, sm.EndCall)):
			return await self._advance_call(handle, user_id, action)
		if isinstance(action, sm.UpdateStatus):
			if action.status not in PRESENCE_STATUSES or action.status == "offline":
				raise ValidationError("invalid_status")
			await self.router.announce_presence(user_id, action.status)
			return {"status": action.status}
		raise ValidationError("unsupported_action")

	# --- messages ------------------------------------------------------------
	def _validate_content(self, content: str) -> str:
		text = (content or "").strip()
		if not text:
			raise ValidationError("empty_content")
		if len(text) > settings.message_max_length:
			raise ValidationError("content_too_long")
		return text

	async def _persist_and_route(
		self,
		handle: Hashable,
		user_id: str,
		room_id: str,
		kind: str,
		content: str,
		event: str,
		attachment: MediaReference | None = None,
	) -> dict:
		now = self._clock()
		room = RoomRef.parse(room_id)
		message = await self.repository.create(
			room_id=room_id,
			sender_id=user_id,
			type=kind,
			content=content,
			created_at=now,
			attachment=attachment,
		)
		obs_metrics.inc_chat_message(kind, room.kind)
		await self.router.broadcast(room_id, event, message.to_dict())
		if room.kind != PERSONAL:
			try:
				await self.access.touch_activity(room, now)
			except Exception:
				_LOG.exception("chat.touch_activity_failed", extra={"room_id": room_id})
		ack = {"messageId": message.id, "roomId": room_id, "timestamp": message.created_at.isoformat()}
		if self._is_live(handle):
			await self.router.send_to_handle(handle, "message-sent", ack)
		return ack

	async def _send_message(self, handle: Hashable, user_id: str, action: sm.SendMessage) -> dict:
		if action.type not in MESSAGE_TYPES:
			raise ValidationError("unsupported_message_type")
		content = self._validate_content(action.content)
		return await self._persist_and_route(handle, user_id, action.room_id, action.type, content, "new-message")

	async def _load_owned(self, user_id: str, room_id: str, message_id: str, op: str) -> Message:
		message = await self._load(room_id, message_id)
		if message.sender_id != user_id:
			obs_metrics.inc_chat_error(op, "forbidden")
			raise Forbidden("not_message_sender")
		return message

	async def _load(self, room_id: str, message_id: str) -> Message:
		message = await self.repository.get(message_id)
		if message is None or message.is_deleted or message.room_id != room_id:
			raise NotFound("message_not_found")
		return message

	async def _edit_message(self, user_id: str, action: sm.EditMessage) -> dict:
		await self._load_owned(user_id, action.room_id, action.message_id, "edit_message")
		content = self._validate_content(action.content)
		updated = await self.repository.update_content(action.message_id, content, self._clock())
		payload = {
			"messageId": updated.id,
			"roomId": updated.room_id,
			"content": updated.content,
			"isEdited": True,
			"editedAt": updated.edited_at.isoformat() if updated.edited_at else None,
		}
		await self.router.broadcast(action.room_id, "message-edited", payload)
		return payload

	async def _delete_message(self, user_id: str, action: sm.DeleteMessage) -> dict:
		await self._load_owned(user_id, action.room_id, action.message_id, "delete_message")
		deleted = await self.repository.soft_delete(action.message_id, self._clock())
		payload = {
			"messageId": deleted.id,
			"roomId": deleted.room_id,
			"deletedAt": deleted.deleted_at.isoformat() if deleted.deleted_at else None,
		}
		await self.router.broadcast(action.room_id, "message-deleted", payload)
		return payload

	async def _react(self, user_id: str, action: sm.React) -> dict:
		emoji = (action.emoji or "").strip()
		if not emoji:
			raise ValidationError("emoji_required")
		await self._load(action.room_id, action.message_id)
		_, outcome = await self.repository.toggle_reaction(action.message_id, user_id, emoji, self._clock())
		delta = {
			"messageId": action.message_id,
			"roomId": action.room_id,
			"userId": user_id,
			"emoji": emoji,
			"action": outcome,
		}
		await self.router.broadcast(action.room_id, "message-reaction", delta)
		return delta

	async def _mark_read(self, user_id: str, action: sm.MarkRead) -> dict:
		await self._load(action.room_id, action.message_id)
		now = self._clock()
		added = await self.repository.add_read_receipt(action.message_id, user_id, now)
		payload = {"messageId": action.message_id, "roomId": action.room_id, "userId": user_id, "readAt": now.isoformat()}
		if added:
			await self.router.broadcast(action.room_id, "message-read", payload)
		return {**payload, "added": added}

	# --- calls ---------------------------------------------------------------
	async def _start_call(self, handle: Hashable, user_id: str, action: sm.StartCall) -> dict:
		if not self.registry.is_online(action.target_id):
			obs_metrics.inc_chat_error("start_call", "user_unavailable")
			raise UserUnavailable("user_offline")
		if self.calls.is_busy(action.target_id):
			raise UserUnavailable("user_busy")
		call = self.calls.start(
			user_id,
			action.target_id,
			room_id=action.room_id,
			call_type=action.call_type,
			now=self._clock(),
		)
		delivered = await self.router.send_to_user(action.target_id, "incoming-call", call.to_dict())
		if not delivered:
			self.calls.advance(call.id, user_id, CALL_ENDED, now=self._clock(), reason="unreachable")
			raise UserUnavailable("user_offline")
		obs_metrics.inc_call_transition(call.status)
		payload = call.to_dict()
		await self.router.send_to_handle(handle, "call-initiated", payload)
		return payload

	async def _advance_call(self, handle: Hashable, user_id: str, action: sm.Action) -> dict:
		if isinstance(action, sm.AcceptCall):
			status, event, reason = CALL_ACCEPTED, "call-accepted", None
		elif isinstance(action, sm.RejectCall):
			status, event, reason = CALL_REJECTED, "call-rejected", action.reason
		else:
			status, event, reason = CALL_ENDED, "call-ended", None
		call = self.calls.advance(action.call_id, user_id, status, now=self._clock(), reason=reason)  # type: ignore[attr-defined]
		obs_metrics.inc_call_transition(status)
		payload = call.to_dict()
		await self.router.send_to_user(call.peer_of(user_id), event, payload)
		await self.router.send_to_handle(handle, event, payload)
		return payload

	# --- public surface ------------------------------------------------------
	async def connect(self, user_id: str, handle: Hashable) -> ConnectResult:
		"""Register the connection, announce presence and drain queued notifications."""
		registration: Registration | None = await self.handle(handle, sm.Authenticate(user_id))
		if registration is None:
			# same user re-authenticating on the same connection
			registration = self._register(user_id, handle)
		await self.router.announce_presence(user_id, "online")
		result = ConnectResult(registration=registration)
		if self.offline_queue is not None:
			drained = await self.offline_queue.drain(user_id)
			if drained:
				result.offline_notifications = drained
				await self.router.send_to_handle(
					handle,
					"offline-notifications",
					{"notifications": drained, "count": len(drained)},
				)
		return result

	async def disconnect(self, handle: Hashable) -> None:
		await self.handle(handle, sm.Disconnect())

	async def join_room(self, handle: Hashable, room_id: str) -> dict:
		RoomRef.parse(room_id)
		return await self.handle(handle, sm.RequestJoin(room_id))

	async def leave_room(self, handle: Hashable, room_id: str) -> dict:
		result = await self.handle(handle, sm.Leave(room_id))
		return result or {"roomId": room_id}

	async def send_message(self, handle: Hashable, room_id: str, content: str, type: str = "text") -> dict:
		return await self.handle(handle, sm.SendMessage(room_id=room_id, content=content, type=type))

	async def edit_message(self, handle: Hashable, room_id: str, message_id: str, content: str) -> dict:
		return await self.handle(handle, sm.EditMessage(room_id=room_id, message_id=message_id, content=content))

	async def delete_message(self, handle: Hashable, room_id: str, message_id: str) -> dict:
		return await self.handle(handle, sm.DeleteMessage(room_id=room_id, message_id=message_id))

	async def react(self, handle: Hashable, room_id: str, message_id: str, emoji: str) -> dict:
		return await self.handle(handle, sm.React(room_id=room_id, message_id=message_id, emoji=emoji))

	async def mark_read(self, handle: Hashable, room_id: str, message_id: str) -> dict:
		return await self.handle(handle, sm.MarkRead(room_id=room_id, message_id=message_id))

	async def typing(self, handle: Hashable, room_id: str, is_typing: bool) -> None:
		await self.handle(handle, sm.Typing(room_id=room_id, is_typing=is_typing))

	async def share_file(self, handle: Hashable, room_id: str, payload: dict) -> dict:
		return await self.handle(handle, sm.ShareFile(room_id=room_id, payload=payload))

	async def share_voice(self, handle: Hashable, room_id: str, payload: dict) -> dict:
		return await self.handle(handle, sm.ShareVoice(room_id=room_id, payload=payload))

	async def history(
		self,
		handle: Hashable,
		room_id: str,
		*,
		before: Optional[datetime] = None,
		limit: int = 50,
	) -> List[dict]:
		return await self.handle(handle, sm.History(room_id=room_id, before=before, limit=limit))

	async def start_call(
		self,
		handle: Hashable,
		target_id: str,
		*,
		room_id: Optional[str] = None,
		call_type: str = "voice",
	) -> dict:
		return await self.handle(handle, sm.StartCall(target_id=target_id, room_id=room_id, call_type=call_type))

	async def accept_call(self, handle: Hashable, call_id: str) -> dict:
		return await self.handle(handle, sm.AcceptCall(call_id=call_id))

	async def reject_call(self, handle: Hashable, call_id: str, reason: Optional[str] = None) -> dict:
		return await self.handle(handle, sm.RejectCall(call_id=call_id, reason=reason))

	async def end_call(self, handle: Hashable, call_id: str) -> dict:
		return await self.handle(handle, sm.EndCall(call_id=call_id))

	async def update_status(self, handle: Hashable, status: str) -> dict:
		return await self.handle(handle, sm.UpdateStatus(status=status))


__all__ = ["ChatCoordinator", "ConnectResult"]
