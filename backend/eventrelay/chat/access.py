"""Room access checks against event attendance and tribe membership."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Protocol, Set

from eventrelay.errors import AccessDenied, NotFound
from eventrelay.infra.postgres import get_pool
from eventrelay.realtime.rooms import EVENT, PERSONAL, TRIBE, RoomRef


class AccessControl(Protocol):
	async def is_event_member(self, user_id: str, event_id: str) -> Optional[bool]:
		"""None when the event does not exist."""

	async def is_tribe_member(self, user_id: str, tribe_id: str) -> Optional[bool]:
		"""None when the tribe does not exist."""

	async def touch_activity(self, room: RoomRef, at: datetime) -> None:
		...


async def verify_access(access: AccessControl, user_id: str, room: RoomRef) -> None:
	"""Raise unless ``user_id`` may join ``room``."""
	if room.kind == PERSONAL:
		if room.target_id != user_id:
			raise AccessDenied("personal_room_of_other_user")
		return
	if room.kind == EVENT:
		allowed = await access.is_event_member(user_id, room.target_id)
		if allowed is None:
			raise NotFound("event_not_found")
		if not allowed:
			raise AccessDenied("not_event_attendee")
		return
	if room.kind == TRIBE:
		allowed = await access.is_tribe_member(user_id, room.target_id)
		if allowed is None:
			raise NotFound("tribe_not_found")
		if not allowed:
			raise AccessDenied("not_tribe_member")
		return
	raise AccessDenied()


@dataclass(slots=True)
class _EventRecord:
	host_id: str
	attendees: Set[str] = field(default_factory=set)
	last_activity: Optional[datetime] = None


@dataclass(slots=True)
class _TribeRecord:
	members: Set[str] = field(default_factory=set)
	last_activity: Optional[datetime] = None


class InMemoryAccessControl:
	"""Fallback access directory used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.events: Dict[str, _EventRecord] = {}
		self.tribes: Dict[str, _TribeRecord] = {}

	def add_event(self, event_id: str, host_id: str, attendees=()) -> None:
		self.events[event_id] = _EventRecord(host_id=host_id, attendees=set(attendees))

	def add_tribe(self, tribe_id: str, members=()) -> None:
		self.tribes[tribe_id] = _TribeRecord(members=set(members))

	async def is_event_member(self, user_id: str, event_id: str) -> Optional[bool]:
		async with self._lock:
			record = self.events.get(event_id)
			if record is None:
				return None
			return user_id == record.host_id or user_id in record.attendees

	async def is_tribe_member(self, user_id: str, tribe_id: str) -> Optional[bool]:
		async with self._lock:
			record = self.tribes.get(tribe_id)
			if record is None:
				return None
			return user_id in record.members

	async def touch_activity(self, room: RoomRef, at: datetime) -> None:
		async with self._lock:
			if room.kind == EVENT and room.target_id in self.events:
				self.events[room.target_id].last_activity = at
			elif room.kind == TRIBE and room.target_id in self.tribes:
				self.tribes[room.target_id].last_activity = at

	def last_activity(self, room: RoomRef) -> Optional[datetime]:
		if room.kind == EVENT and room.target_id in self.events:
			return self.events[room.target_id].last_activity
		if room.kind == TRIBE and room.target_id in self.tribes:
			return self.tribes[room.target_id].last_activity
		return None


class PostgresAccessControl:
	"""Access checks against the events and tribes tables."""

	async def is_event_member(self, user_id: str, event_id: str) -> Optional[bool]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT e.host_id,
					EXISTS (
						SELECT 1 FROM event_attendees a
						WHERE a.event_id = e.id AND a.user_id = $2
					) AS attending
				FROM events e
				WHERE e.id = $1
				""",
				event_id,
				user_id,
			)
		if row is None:
			return None
		return str(row["host_id"]) == user_id or bool(row["attending"])

	async def is_tribe_member(self, user_id: str, tribe_id: str) -> Optional[bool]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT EXISTS (
					SELECT 1 FROM tribe_members m
					WHERE m.tribe_id = t.id AND m.user_id = $2
				) AS member
				FROM tribes t
				WHERE t.id = $1
				""",
				tribe_id,
				user_id,
			)
		if row is None:
			return None
		return bool(row["member"])

	async def touch_activity(self, room: RoomRef, at: datetime) -> None:
		table = {EVENT: "events", TRIBE: "tribes"}.get(room.kind)
		if table is None:
			return
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				f"UPDATE {table} SET last_activity = $2 WHERE id = $1",
				room.target_id,
				at,
			)


__all__ = ["AccessControl", "InMemoryAccessControl", "PostgresAccessControl", "verify_access"]
