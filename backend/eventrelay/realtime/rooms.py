"""Room identifier helpers."""

from __future__ import annotations

from dataclasses import dataclass

from eventrelay.errors import ValidationError

PERSONAL = "personal"
EVENT = "event"
TRIBE = "tribe"

ROOM_KINDS = (PERSONAL, EVENT, TRIBE)


@dataclass(frozen=True, slots=True)
class RoomRef:
	kind: str
	target_id: str

	@property
	def room_id(self) -> str:
		return f"{self.kind}:{self.target_id}"

	@classmethod
	def parse(cls, room_id: str) -> "RoomRef":
		kind, sep, target = str(room_id or "").partition(":")
		if not sep or kind not in ROOM_KINDS or not target:
			raise ValidationError("invalid_room")
		return cls(kind=kind, target_id=target)


def personal_room(user_id: str) -> str:
	return f"{PERSONAL}:{user_id}"


def event_room(event_id: str) -> str:
	return f"{EVENT}:{event_id}"


def tribe_room(tribe_id: str) -> str:
	return f"{TRIBE}:{tribe_id}"


__all__ = ["EVENT", "PERSONAL", "ROOM_KINDS", "RoomRef", "TRIBE", "event_room", "personal_room", "tribe_room"]
