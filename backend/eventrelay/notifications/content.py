"""Notification content builder.

Maps a domain event type plus its context to the title, body and structured
data of a notification. Pure and deterministic; unknown types fall back to a
generic message instead of failing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

from .models import PRIORITIES, NotificationTemplate

PREVIEW_LENGTH = 100

_PLACEHOLDERS = {
	"actor": "Someone",
	"event": "an event",
	"tribe": "a tribe",
	"content_type": "post",
	"where": "a conversation",
	"minutes": "a few",
	"preview": "",
	"message": "You have a new notification",
	"title": "Notification",
}

_EVENT_UPDATE_MESSAGES = {
	"time": "The event time has changed",
	"location": "The event location has changed",
	"details": "The event details have been updated",
	"capacity": "The event capacity has changed",
}


class _Context(dict):
	def __missing__(self, key: str) -> str:
		return _PLACEHOLDERS.get(key, "")


def preview(text: Any, limit: int = PREVIEW_LENGTH) -> str:
	value = str(text or "").strip()
	if len(value) <= limit:
		return value
	return f"{value[:limit]}..."


@dataclass(frozen=True, slots=True)
class BuiltContent:
	title: str
	body: str
	data: Dict[str, Any] = field(default_factory=dict)
	priority: str = "normal"
	category: str = "system"

	def as_template(self, type: str) -> NotificationTemplate:
		return NotificationTemplate(
			type=type,
			title=self.title,
			body=self.body,
			data=dict(self.data),
			priority=self.priority,
			category=self.category,
		)


@dataclass(frozen=True, slots=True)
class _Entry:
	title: str
	body: str
	priority: str
	category: str
	screen: str
	# (context key, data key) pairs copied into the structured data
	ids: Tuple[Tuple[str, str], ...] = ()


_TABLE: Dict[str, _Entry] = {
	"event_invite": _Entry(
		"Event invitation",
		'{actor} invited you to "{event}"',
		"high",
		"events",
		"EventDetails",
		(("eventId", "eventId"), ("actorId", "inviterId")),
	),
	"event_update": _Entry(
		"Event updated",
		"{update_message}",
		"normal",
		"events",
		"EventDetails",
		(("eventId", "eventId"), ("updateType", "updateType")),
	),
	"event_reminder": _Entry(
		"Event reminder",
		'"{event}" starts in {minutes} minutes',
		"high",
		"events",
		"EventDetails",
		(("eventId", "eventId"), ("minutesBefore", "minutesBefore")),
	),
	"event_cancelled": _Entry(
		"Event cancelled",
		'"{event}" has been cancelled',
		"high",
		"events",
		"EventDetails",
		(("eventId", "eventId"),),
	),
	"event_joined": _Entry(
		"New attendee",
		'{actor} joined "{event}"',
		"low",
		"events",
		"EventDetails",
		(("eventId", "eventId"), ("actorId", "userId")),
	),
	"event_left": _Entry(
		"Attendee left",
		'{actor} left "{event}"',
		"low",
		"events",
		"EventDetails",
		(("eventId", "eventId"), ("actorId", "userId")),
	),
	"tribe_invite": _Entry(
		"Tribe invitation",
		'{actor} invited you to join "{tribe}"',
		"high",
		"tribes",
		"TribeDetails",
		(("tribeId", "tribeId"), ("actorId", "inviterId")),
	),
	"tribe_update": _Entry(
		"Tribe updated",
		'"{tribe}" has new updates',
		"normal",
		"tribes",
		"TribeDetails",
		(("tribeId", "tribeId"),),
	),
	"tribe_joined": _Entry(
		"New tribe member",
		'{actor} joined "{tribe}"',
		"low",
		"tribes",
		"TribeDetails",
		(("tribeId", "tribeId"), ("actorId", "userId")),
	),
	"tribe_left": _Entry(
		"Member left",
		'{actor} left "{tribe}"',
		"low",
		"tribes",
		"TribeDetails",
		(("tribeId", "tribeId"), ("actorId", "userId")),
	),
	"social_follow": _Entry(
		"New follower",
		"{actor} started following you",
		"low",
		"social",
		"UserProfile",
		(("actorId", "followerId"),),
	),
	"social_like": _Entry(
		"New like",
		"{actor} liked your {content_type}",
		"low",
		"social",
		"PostDetails",
		(("contentId", "contentId"), ("contentType", "contentType"), ("actorId", "likedBy")),
	),
	"social_comment": _Entry(
		"New comment",
		'{actor} commented: "{preview}"',
		"normal",
		"social",
		"PostDetails",
		(("contentId", "contentId"), ("commentId", "commentId"), ("actorId", "commentedBy")),
	),
	"social_mention": _Entry(
		"You were mentioned",
		"{actor} mentioned you in {where}",
		"normal",
		"social",
		"PostDetails",
		(("contentId", "contentId"), ("actorId", "mentionedBy")),
	),
	"chat_message": _Entry(
		"New message from {actor}",
		"{preview}",
		"normal",
		"messages",
		"Chat",
		(("roomId", "roomId"), ("messageId", "messageId"), ("actorId", "senderId")),
	),
	"system": _Entry("{title}", "{message}", "normal", "system", "Notifications"),
	"security": _Entry("{title}", "{message}", "urgent", "security", "Security"),
	"promotional": _Entry("{title}", "{message}", "low", "marketing", "Notifications"),
}

_GENERIC = _Entry("{title}", "{message}", "normal", "system", "Notifications")


def supported_types() -> Tuple[str, ...]:
	return tuple(_TABLE)


def _context(domain_type: str, raw: Mapping[str, Any]) -> _Context:
	ctx = _Context()
	for key, placeholder_key in (
		("actorName", "actor"),
		("eventTitle", "event"),
		("tribeName", "tribe"),
		("contentType", "content_type"),
		("context", "where"),
		("minutesBefore", "minutes"),
		("title", "title"),
		("message", "message"),
	):
		value = raw.get(key)
		if value not in (None, ""):
			ctx[placeholder_key] = str(value)
	text = raw.get("messageText") if domain_type == "chat_message" else raw.get("commentText")
	if text:
		ctx["preview"] = preview(text)
	elif domain_type == "chat_message":
		ctx["preview"] = "Sent you a message"
	update_type = str(raw.get("updateType") or "")
	ctx["update_message"] = _EVENT_UPDATE_MESSAGES.get(update_type, "The event has been updated")
	return ctx


def build(domain_type: str, context: Mapping[str, Any] | None = None) -> BuiltContent:
	"""Render the notification content for ``domain_type``."""
	raw = dict(context or {})
	entry = _TABLE.get(domain_type, _GENERIC)
	ctx = _context(domain_type, raw)
	data: Dict[str, Any] = {"type": domain_type, "screen": entry.screen}
	for source, target in entry.ids:
		if raw.get(source) is not None:
			data[target] = raw[source]
	priority = str(raw.get("priority") or entry.priority)
	if priority not in PRIORITIES:
		priority = entry.priority
	return BuiltContent(
		title=entry.title.format_map(ctx),
		body=entry.body.format_map(ctx),
		data=data,
		priority=priority,
		category=entry.category,
	)


__all__ = ["BuiltContent", "PREVIEW_LENGTH", "build", "preview", "supported_types"]
