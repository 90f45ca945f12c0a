"""Domain models for room chat."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

MESSAGE_TYPES = frozenset({"text", "image", "file", "voice", "location", "system"})

CALL_INITIATED = "initiated"
CALL_ACCEPTED = "accepted"
CALL_REJECTED = "rejected"
CALL_ENDED = "ended"

PRESENCE_STATUSES = frozenset({"online", "away", "busy", "offline"})


@dataclass(slots=True)
class Reaction:
	user_id: str
	emoji: str
	reacted_at: datetime

	def to_dict(self) -> dict:
		return {"userId": self.user_id, "emoji": self.emoji, "reactedAt": self.reacted_at.isoformat()}


@dataclass(slots=True)
class ReadReceipt:
	user_id: str
	read_at: datetime

	def to_dict(self) -> dict:
		return {"userId": self.user_id, "readAt": self.read_at.isoformat()}


@dataclass(slots=True)
class MediaReference:
	"""What the media collaborator hands back; raw bytes never reach the message store."""

	url: str
	name: str
	size: int
	mime_type: str
	duration: Optional[float] = None

	def to_dict(self) -> dict:
		payload = {"url": self.url, "name": self.name, "size": self.size, "mimeType": self.mime_type}
		if self.duration is not None:
			payload["duration"] = self.duration
		return payload

	@classmethod
	def from_dict(cls, raw: dict) -> "MediaReference":
		return cls(
			url=str(raw["url"]),
			name=str(raw.get("name") or ""),
			size=int(raw.get("size") or 0),
			mime_type=str(raw.get("mimeType") or "application/octet-stream"),
			duration=float(raw["duration"]) if raw.get("duration") is not None else None,
		)


@dataclass(slots=True)
class Message:
	id: str
	room_id: str
	sender_id: str
	type: str
	content: str
	created_at: datetime
	edited_at: Optional[datetime] = None
	deleted_at: Optional[datetime] = None
	reactions: List[Reaction] = field(default_factory=list)
	read_by: List[ReadReceipt] = field(default_factory=list)
	attachment: Optional[MediaReference] = None

	@property
	def is_edited(self) -> bool:
		return self.edited_at is not None

	@property
	def is_deleted(self) -> bool:
		return self.deleted_at is not None

	def has_reaction(self, user_id: str, emoji: str) -> bool:
		return any(r.user_id == user_id and r.emoji == emoji for r in self.reactions)

	def has_read(self, user_id: str) -> bool:
		return any(r.user_id == user_id for r in self.read_by)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"roomId": self.room_id,
			"senderId": self.sender_id,
			"type": self.type,
			"content": self.content if not self.is_deleted else "",
			"createdAt": self.created_at.isoformat(),
			"editedAt": self.edited_at.isoformat() if self.edited_at else None,
			"isEdited": self.is_edited,
			"isDeleted": self.is_deleted,
			"reactions": [r.to_dict() for r in self.reactions],
			"readBy": [r.to_dict() for r in self.read_by],
			"attachment": self.attachment.to_dict() if self.attachment else None,
		}


@dataclass(slots=True)
class CallSession:
	id: str
	caller_id: str
	target_id: str
	room_id: Optional[str]
	status: str
	created_at: datetime
	updated_at: datetime
	call_type: str = "voice"
	reason: Optional[str] = None

	@property
	def active(self) -> bool:
		return self.status in (CALL_INITIATED, CALL_ACCEPTED)

	def peer_of(self, user_id: str) -> str:
		return self.target_id if user_id == self.caller_id else self.caller_id

	def involves(self, user_id: str) -> bool:
		return user_id in (self.caller_id, self.target_id)

	def to_dict(self) -> dict:
		return {
			"callId": self.id,
			"callerId": self.caller_id,
			"targetId": self.target_id,
			"roomId": self.room_id,
			"callType": self.call_type,
			"status": self.status,
			"reason": self.reason,
			"createdAt": self.created_at.isoformat(),
			"updatedAt": self.updated_at.isoformat(),
		}
