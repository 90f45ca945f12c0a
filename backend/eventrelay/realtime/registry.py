"""In-process registry of live connections and room membership.

The registry is plain in-memory state guarded by a single re-entrant lock.
Nothing here awaits or performs I/O; callers take snapshots and do their sends
outside the lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, Protocol, Set, Tuple

from .rooms import personal_room


class TransportHandle(Protocol):
	"""A live client connection able to receive events."""

	async def send(self, event: str, payload: object) -> None:
		...


@dataclass(frozen=True, slots=True)
class Registration:
	user_id: str
	handle: Hashable
	previous: Optional[Hashable]
	personal_room: str

	@property
	def replaced(self) -> bool:
		return self.previous is not None


class ConnectionRegistry:
	"""Maps online users to one transport handle each and tracks room membership."""

	def __init__(self, clock: Callable[[], float] = time.time) -> None:
		self._lock = threading.RLock()
		self._clock = clock
		self._user_handle: Dict[str, Hashable] = {}
		self._handle_user: Dict[Hashable, str] = {}
		self._handle_rooms: Dict[Hashable, Set[str]] = {}
		self._rooms: Dict[str, Set[Hashable]] = {}
		self._last_seen: Dict[str, float] = {}
		self._last_active: Dict[str, float] = {}

	# --- connections ---------------------------------------------------
	def register(self, user_id: str, handle: Hashable) -> Registration:
		"""Make ``handle`` the only live connection of ``user_id`` (last handshake wins)."""
		with self._lock:
			previous = self._user_handle.get(user_id)
			if previous is not None and previous != handle:
				self._drop_handle(previous)
			else:
				previous = None
			owner = self._handle_user.get(handle)
			if owner is not None and owner != user_id:
				# handle reused by another user: detach it from the old owner first
				self._user_handle.pop(owner, None)
				self._drop_handle(handle)
			self._user_handle[user_id] = handle
			self._handle_user[handle] = user_id
			self._handle_rooms.setdefault(handle, set())
			room = personal_room(user_id)
			self._join(room, handle)
			now = self._clock()
			self._last_seen[user_id] = now
			self._last_active[user_id] = now
			return Registration(user_id=user_id, handle=handle, previous=previous, personal_room=room)

	def unregister(self, user_id: str, handle: Hashable | None = None) -> bool:
		"""Remove the user's connection. A stale ``handle`` only loses its own rooms."""
		with self._lock:
			current = self._user_handle.get(user_id)
			if handle is not None and handle != current:
				if self._handle_user.get(handle) is None:
					self._drop_handle(handle)
				return False
			if current is None:
				return False
			self._drop_handle(current)
			self._user_handle.pop(user_id, None)
			self._last_seen[user_id] = self._clock()
			return True

	def _drop_handle(self, handle: Hashable) -> None:
		for room in self._handle_rooms.pop(handle, set()):
			members = self._rooms.get(room)
			if members is None:
				continue
			members.discard(handle)
			if not members:
				del self._rooms[room]
		self._handle_user.pop(handle, None)

	def is_online(self, user_id: str) -> bool:
		with self._lock:
			return user_id in self._user_handle

	def online_count(self) -> int:
		with self._lock:
			return len(self._user_handle)

	def online_users(self) -> Tuple[str, ...]:
		with self._lock:
			return tuple(self._user_handle)

	def handle_for(self, user_id: str) -> Optional[Hashable]:
		with self._lock:
			return self._user_handle.get(user_id)

	def user_for(self, handle: Hashable) -> Optional[str]:
		with self._lock:
			return self._handle_user.get(handle)

	def all_handles(self) -> Tuple[Hashable, ...]:
		with self._lock:
			return tuple(self._handle_user)

	# --- rooms ---------------------------------------------------------
	def join_room(self, room_id: str, handle: Hashable) -> bool:
		"""Idempotent join; returns True when the handle was not a member yet."""
		with self._lock:
			return self._join(room_id, handle)

	def _join(self, room_id: str, handle: Hashable) -> bool:
		members = self._rooms.setdefault(room_id, set())
		if handle in members:
			return False
		members.add(handle)
		self._handle_rooms.setdefault(handle, set()).add(room_id)
		return True

	def leave_room(self, room_id: str, handle: Hashable) -> bool:
		"""Idempotent leave; the room disappears with its last member."""
		with self._lock:
			members = self._rooms.get(room_id)
			if not members or handle not in members:
				return False
			members.discard(handle)
			if not members:
				del self._rooms[room_id]
			rooms = self._handle_rooms.get(handle)
			if rooms is not None:
				rooms.discard(room_id)
			return True

	def members(self, room_id: str) -> Tuple[Hashable, ...]:
		with self._lock:
			return tuple(self._rooms.get(room_id, ()))

	def rooms_of(self, handle: Hashable) -> Tuple[str, ...]:
		with self._lock:
			return tuple(sorted(self._handle_rooms.get(handle, ())))

	def room_size(self, room_id: str) -> int:
		with self._lock:
			return len(self._rooms.get(room_id, ()))

	def has_room(self, room_id: str) -> bool:
		with self._lock:
			return room_id in self._rooms

	def room_count(self) -> int:
		with self._lock:
			return len(self._rooms)

	# --- activity ------------------------------------------------------
	def touch(self, user_id: str) -> None:
		with self._lock:
			now = self._clock()
			self._last_active[user_id] = now
			if user_id in self._user_handle:
				self._last_seen[user_id] = now

	def last_seen(self, user_id: str) -> Optional[float]:
		with self._lock:
			return self._last_seen.get(user_id)

	def is_active(self, user_id: str, within: float) -> bool:
		"""True when the user is online and did something in the last ``within`` seconds."""
		with self._lock:
			if user_id not in self._user_handle:
				return False
			last = self._last_active.get(user_id)
			return last is not None and self._clock() - last <= within

	def stats(self) -> dict:
		with self._lock:
			return {
				"online_users": len(self._user_handle),
				"connections": len(self._handle_user),
				"rooms": len(self._rooms),
			}

	def clear(self) -> None:
		with self._lock:
			self._user_handle.clear()
			self._handle_user.clear()
			self._handle_rooms.clear()
			self._rooms.clear()


__all__ = ["ConnectionRegistry", "Registration", "TransportHandle"]
