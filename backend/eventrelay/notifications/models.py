"""Domain models for notifications and scheduled sends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

IN_APP = "in_app"
PUSH = "push"
EMAIL = "email"
SMS = "sms"
CHANNELS = (IN_APP, PUSH, EMAIL, SMS)

PRIORITIES = ("low", "normal", "high", "urgent")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}

CATEGORIES = ("social", "events", "tribes", "messages", "system", "security", "marketing")

UNREAD = "unread"
READ = "read"
ARCHIVED = "archived"
DELETED = "deleted"
INBOX_STATUSES = (UNREAD, READ, ARCHIVED, DELETED)

PENDING = "pending"
PROCESSING = "processing"
SENT = "sent"
FAILED = "failed"
CANCELLED = "cancelled"
EXPIRED = "expired"
SCHEDULE_STATUSES = (PENDING, PROCESSING, SENT, FAILED, CANCELLED, EXPIRED)
TERMINAL_STATUSES = (EXPIRED, FAILED, CANCELLED)

PATTERNS = ("daily", "weekly", "monthly", "yearly", "custom")

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


def _iso(value: Optional[datetime]) -> Optional[str]:
	return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
	if value is None or isinstance(value, datetime):
		return value
	return datetime.fromisoformat(str(value))


@dataclass(slots=True)
class ChannelDelivery:
	sent: bool = False
	sent_at: Optional[datetime] = None
	delivered: bool = False
	delivered_at: Optional[datetime] = None
	failed: bool = False
	failure_reason: Optional[str] = None

	def to_dict(self) -> dict:
		return {
			"sent": self.sent,
			"sentAt": _iso(self.sent_at),
			"delivered": self.delivered,
			"deliveredAt": _iso(self.delivered_at),
			"failed": self.failed,
			"failureReason": self.failure_reason,
		}

	@classmethod
	def from_dict(cls, raw: dict) -> "ChannelDelivery":
		return cls(
			sent=bool(raw.get("sent")),
			sent_at=_parse(raw.get("sentAt")),
			delivered=bool(raw.get("delivered")),
			delivered_at=_parse(raw.get("deliveredAt")),
			failed=bool(raw.get("failed")),
			failure_reason=raw.get("failureReason"),
		)


@dataclass(slots=True)
class NotificationTemplate:
	"""Rendered content ready to be delivered."""

	type: str
	title: str
	body: str
	data: Dict[str, Any] = field(default_factory=dict)
	priority: str = "normal"
	category: str = "system"

	def to_dict(self) -> dict:
		return {
			"type": self.type,
			"title": self.title,
			"body": self.body,
			"data": dict(self.data),
			"priority": self.priority,
			"category": self.category,
		}

	@classmethod
	def from_dict(cls, raw: dict) -> "NotificationTemplate":
		return cls(
			type=str(raw["type"]),
			title=str(raw.get("title") or ""),
			body=str(raw.get("body") or ""),
			data=dict(raw.get("data") or {}),
			priority=str(raw.get("priority") or "normal"),
			category=str(raw.get("category") or "system"),
		)


@dataclass(slots=True)
class Notification:
	id: str
	recipient_id: str
	type: str
	title: str
	body: str
	created_at: datetime
	data: Dict[str, Any] = field(default_factory=dict)
	priority: str = "normal"
	category: str = "system"
	channels: Tuple[str, ...] = (IN_APP,)
	status: str = UNREAD
	sender_id: Optional[str] = None
	read_at: Optional[datetime] = None
	delivery: Dict[str, ChannelDelivery] = field(default_factory=dict)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"recipientId": self.recipient_id,
			"senderId": self.sender_id,
			"type": self.type,
			"title": self.title,
			"body": self.body,
			"data": self.data,
			"priority": self.priority,
			"category": self.category,
			"channels": list(self.channels),
			"status": self.status,
			"isRead": self.status == READ,
			"readAt": _iso(self.read_at),
			"createdAt": self.created_at.isoformat(),
			"delivery": {channel: state.to_dict() for channel, state in self.delivery.items()},
		}

	def compact(self) -> dict:
		"""Small copy kept in the offline queue."""
		return {
			"id": self.id,
			"type": self.type,
			"title": self.title,
			"body": self.body,
			"data": self.data,
			"priority": self.priority,
			"createdAt": self.created_at.isoformat(),
		}


@dataclass(slots=True)
class Recurrence:
	pattern: str
	interval: int = 1
	enabled: bool = True
	days_of_week: Tuple[int, ...] = ()
	end_date: Optional[datetime] = None
	max_occurrences: Optional[int] = None
	current_occurrence: int = 0

	def __post_init__(self) -> None:
		# naive end dates are read as UTC so they compare with fire times
		if self.end_date is not None and self.end_date.tzinfo is None:
			self.end_date = self.end_date.replace(tzinfo=timezone.utc)

	@property
	def exhausted(self) -> bool:
		return self.max_occurrences is not None and self.current_occurrence >= self.max_occurrences

	def to_dict(self) -> dict:
		return {
			"enabled": self.enabled,
			"pattern": self.pattern,
			"interval": self.interval,
			"daysOfWeek": list(self.days_of_week),
			"endDate": _iso(self.end_date),
			"maxOccurrences": self.max_occurrences,
			"currentOccurrence": self.current_occurrence,
		}

	@classmethod
	def from_dict(cls, raw: dict) -> "Recurrence":
		return cls(
			pattern=str(raw["pattern"]),
			interval=int(raw.get("interval") or 1),
			enabled=bool(raw.get("enabled", True)),
			days_of_week=tuple(sorted(int(day) for day in raw.get("daysOfWeek") or ())),
			end_date=_parse(raw.get("endDate")),
			max_occurrences=int(raw["maxOccurrences"]) if raw.get("maxOccurrences") is not None else None,
			current_occurrence=int(raw.get("currentOccurrence") or 0),
		)


@dataclass(slots=True)
class TimeWindow:
	start: str
	end: str

	def to_dict(self) -> dict:
		return {"start": self.start, "end": self.end}


@dataclass(slots=True)
class Conditions:
	user_online: bool = False
	user_active: bool = False
	time_window: Optional[TimeWindow] = None
	timezone: str = "UTC"

	def to_dict(self) -> dict:
		return {
			"userOnline": self.user_online,
			"userActive": self.user_active,
			"timeWindow": self.time_window.to_dict() if self.time_window else None,
			"timezone": self.timezone,
		}

	@classmethod
	def from_dict(cls, raw: dict) -> "Conditions":
		window = raw.get("timeWindow")
		return cls(
			user_online=bool(raw.get("userOnline")),
			user_active=bool(raw.get("userActive")),
			time_window=TimeWindow(start=str(window["start"]), end=str(window["end"])) if window else None,
			timezone=str(raw.get("timezone") or "UTC"),
		)


@dataclass(slots=True)
class ScheduledNotification:
	id: str
	user_id: str
	template: NotificationTemplate
	channels: Tuple[str, ...]
	scheduled_time: datetime
	created_at: datetime
	updated_at: datetime
	status: str = PENDING
	execution_attempts: int = 0
	max_execution_attempts: int = 3
	last_execution_attempt: Optional[datetime] = None
	execution_error: Optional[str] = None
	executed_at: Optional[datetime] = None
	result: Optional[Dict[str, Any]] = None
	recurrence: Optional[Recurrence] = None
	conditions: Optional[Conditions] = None
	source: str = "api"
	batch_id: Optional[str] = None

	@property
	def priority_rank(self) -> int:
		return PRIORITY_RANK.get(self.template.priority, 1)

	@property
	def recurring(self) -> bool:
		return self.recurrence is not None and self.recurrence.enabled

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"userId": self.user_id,
			"template": self.template.to_dict(),
			"channels": list(self.channels),
			"scheduledTime": self.scheduled_time.isoformat(),
			"status": self.status,
			"executionAttempts": self.execution_attempts,
			"maxExecutionAttempts": self.max_execution_attempts,
			"lastExecutionAttempt": _iso(self.last_execution_attempt),
			"executionError": self.execution_error,
			"executedAt": _iso(self.executed_at),
			"result": self.result,
			"recurrence": self.recurrence.to_dict() if self.recurrence else None,
			"conditions": self.conditions.to_dict() if self.conditions else None,
			"source": self.source,
			"batchId": self.batch_id,
			"createdAt": self.created_at.isoformat(),
			"updatedAt": self.updated_at.isoformat(),
		}
