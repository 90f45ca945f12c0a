"""Ephemeral call signaling sessions."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional

import ulid

from eventrelay.errors import Forbidden, NotFound, ValidationError

from .models import CALL_ACCEPTED, CALL_ENDED, CALL_INITIATED, CALL_REJECTED, CallSession

_ALLOWED = {
	CALL_INITIATED: {CALL_ACCEPTED, CALL_REJECTED, CALL_ENDED},
	CALL_ACCEPTED: {CALL_ENDED},
}

CALL_TYPES = frozenset({"voice", "video"})


class CallBook:
	"""Holds live call sessions; finished calls are dropped."""

	def __init__(self) -> None:
		self._lock = threading.RLock()
		self._calls: Dict[str, CallSession] = {}

	def start(
		self,
		caller_id: str,
		target_id: str,
		*,
		room_id: Optional[str],
		call_type: str,
		now: datetime,
	) -> CallSession:
		if call_type not in CALL_TYPES:
			raise ValidationError("unsupported_call_type")
		if caller_id == target_id:
			raise ValidationError("cannot_call_self")
		session = CallSession(
			id=str(ulid.new()),
			caller_id=caller_id,
			target_id=target_id,
			room_id=room_id,
			status=CALL_INITIATED,
			created_at=now,
			updated_at=now,
			call_type=call_type,
		)
		with self._lock:
			self._calls[session.id] = session
		return session

	def get(self, call_id: str) -> Optional[CallSession]:
		with self._lock:
			return self._calls.get(call_id)

	def advance(
		self,
		call_id: str,
		actor_id: str,
		status: str,
		*,
		now: datetime,
		reason: Optional[str] = None,
	) -> CallSession:
		"""Apply a status change requested by ``actor_id``."""
		with self._lock:
			session = self._calls.get(call_id)
			if session is None:
				raise NotFound("call_not_found")
			if not session.involves(actor_id):
				raise Forbidden("not_call_participant")
			if status in (CALL_ACCEPTED, CALL_REJECTED) and actor_id != session.target_id:
				raise Forbidden("only_target_may_answer")
			if status not in _ALLOWED.get(session.status, set()):
				raise ValidationError(f"invalid_call_transition:{session.status}->{status}")
			session.status = status
			session.updated_at = now
			session.reason = reason
			if status in (CALL_REJECTED, CALL_ENDED):
				del self._calls[call_id]
			return session

	def active_for(self, user_id: str) -> List[CallSession]:
		with self._lock:
			return [call for call in self._calls.values() if call.active and call.involves(user_id)]

	def is_busy(self, user_id: str) -> bool:
		return bool(self.active_for(user_id))


__all__ = ["CALL_TYPES", "CallBook"]
