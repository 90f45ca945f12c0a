"""Notification service surface used by the REST API and other backend modules."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import ulid

from eventrelay.errors import Forbidden, NotFound, ValidationError

from . import content
from .dispatcher import BulkResult, DeliveryResult, NotificationDispatcher
from .models import ARCHIVED, DELETED, INBOX_STATUSES, READ, Conditions, Notification, Recurrence, ScheduledNotification
from .repo import NotificationRepository
from .scheduler import SchedulerEngine

_LOG = logging.getLogger(__name__)

STATS_RANGES = {
	"24h": timedelta(hours=24),
	"7d": timedelta(days=7),
	"30d": timedelta(days=30),
}
MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class NotificationService:
	def __init__(
		self,
		*,
		repository: NotificationRepository,
		dispatcher: NotificationDispatcher,
		engine: SchedulerEngine,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self.repository = repository
		self.dispatcher = dispatcher
		self.engine = engine
		self._clock = clock

	# --- sending ---------------------------------------------------------------
	async def dispatch_notification(
		self,
		recipient_id: str,
		type: str,
		context: Mapping[str, Any] | None = None,
		channels: Iterable[str] | None = None,
		*,
		sender_id: Optional[str] = None,
	) -> DeliveryResult:
		template = content.build(type, context).as_template(type)
		result = await self.dispatcher.dispatch(recipient_id, template, channels, sender_id=sender_id)
		_LOG.info(
			"notifications.dispatched",
			extra={"notification_id": result.notification.id, "recipient_id": recipient_id, "per_channel": result.per_channel},
		)
		return result

	async def dispatch_bulk(
		self,
		recipient_ids: Iterable[str],
		type: str,
		context: Mapping[str, Any] | None = None,
		channels: Iterable[str] | None = None,
		*,
		sender_id: Optional[str] = None,
	) -> BulkResult:
		template = content.build(type, context).as_template(type)
		return await self.dispatcher.dispatch_bulk(recipient_ids, template, channels, sender_id=sender_id)

	async def schedule_notification(
		self,
		user_id: str,
		type: str,
		scheduled_time: datetime,
		context: Mapping[str, Any] | None = None,
		channels: Iterable[str] | None = None,
		*,
		recurrence: Optional[Recurrence] = None,
		conditions: Optional[Conditions] = None,
		max_execution_attempts: Optional[int] = None,
		source: str = "api",
		batch_id: Optional[str] = None,
	) -> ScheduledNotification:
		template = content.build(type, context).as_template(type)
		return await self.engine.schedule(
			user_id,
			template,
			scheduled_time,
			channels,
			recurrence=recurrence,
			conditions=conditions,
			max_execution_attempts=max_execution_attempts,
			source=source,
			batch_id=batch_id,
		)

	async def schedule_bulk(
		self,
		user_ids: Iterable[str],
		type: str,
		scheduled_time: datetime,
		context: Mapping[str, Any] | None = None,
		channels: Iterable[str] | None = None,
		**options: Any,
	) -> tuple[str, List[ScheduledNotification]]:
		"""Schedule the same notification for many users under one batch id."""
		batch_id = str(ulid.new())
		rows = [
			await self.schedule_notification(
				user_id, type, scheduled_time, context, channels, batch_id=batch_id, **options
			)
			for user_id in dict.fromkeys(user_ids)
		]
		return batch_id, rows

	async def get_scheduled(self, scheduled_id: str, user_id: Optional[str] = None) -> ScheduledNotification:
		row = await self.engine.get(scheduled_id)
		if row is None:
			raise NotFound("scheduled_notification_not_found")
		if user_id is not None and row.user_id != user_id:
			raise Forbidden()
		return row

	async def cancel_scheduled(self, scheduled_id: str, user_id: Optional[str] = None) -> bool:
		if user_id is not None:
			await self.get_scheduled(scheduled_id, user_id)
		return await self.engine.cancel(scheduled_id)

	async def cancel_batch(self, batch_id: str) -> int:
		return await self.engine.cancel_batch(batch_id)

	async def list_scheduled(self, user_id: str, *, pending_only: bool = False, limit: int = 50) -> List[ScheduledNotification]:
		return await self.engine.list_for_user(user_id, pending_only=pending_only, limit=min(limit, MAX_PAGE_SIZE))

	# --- inbox -----------------------------------------------------------------
	async def list(
		self,
		user_id: str,
		*,
		status: Optional[str] = None,
		category: Optional[str] = None,
		type: Optional[str] = None,
		page: int = 1,
		limit: int = 20,
	) -> Dict[str, Any]:
		if status is not None and status not in INBOX_STATUSES:
			raise ValidationError(f"invalid_status:{status}")
		page = max(1, page)
		limit = max(1, min(limit, MAX_PAGE_SIZE))
		items, total = await self.repository.list_for_user(
			user_id,
			status=status,
			category=category,
			type=type,
			offset=(page - 1) * limit,
			limit=limit,
		)
		return {
			"notifications": [item.to_dict() for item in items],
			"pagination": {
				"page": page,
				"limit": limit,
				"total": total,
				"pages": (total + limit - 1) // limit,
			},
			"unreadCount": await self.repository.unread_count(user_id),
		}

	async def unread_count(self, user_id: str) -> int:
		return await self.repository.unread_count(user_id)

	async def _owned(self, notification_id: str, user_id: str) -> Notification:
		notification = await self.repository.get(notification_id)
		if notification is None or notification.status == DELETED:
			raise NotFound("notification_not_found")
		if notification.recipient_id != user_id:
			raise Forbidden()
		return notification

	async def _set_status(self, notification_id: str, user_id: str, status: str, **fields: Any) -> Notification:
		await self._owned(notification_id, user_id)
		updated = await self.repository.update_status(notification_id, status, **fields)
		if updated is None:
			raise NotFound("notification_not_found")
		return updated

	async def mark_read(self, notification_id: str, user_id: str) -> Notification:
		return await self._set_status(notification_id, user_id, READ, read_at=self._clock())

	async def mark_all_read(self, user_id: str) -> int:
		return await self.repository.mark_all_read(user_id, self._clock())

	async def archive(self, notification_id: str, user_id: str) -> Notification:
		return await self._set_status(notification_id, user_id, ARCHIVED)

	async def delete(self, notification_id: str, user_id: str) -> Notification:
		return await self._set_status(notification_id, user_id, DELETED)

	async def mark_delivered(self, notification_id: str, channel: str, user_id: Optional[str] = None) -> Notification:
		"""Record a delivery confirmation reported back by a client or gateway."""
		notification = await self.repository.get(notification_id)
		if notification is None:
			raise NotFound("notification_not_found")
		if user_id is not None and notification.recipient_id != user_id:
			raise Forbidden()
		state = notification.delivery.get(channel)
		if state is None:
			raise ValidationError(f"channel_not_requested:{channel}")
		if not state.delivered:
			state.delivered = True
			state.delivered_at = self._clock()
			await self.repository.update_delivery(notification_id, notification.delivery)
		return notification

	async def stats(self, user_id: str, range: str = "7d") -> Dict[str, Any]:
		window = STATS_RANGES.get(range)
		if window is None:
			raise ValidationError(f"invalid_range:{range}")
		since = self._clock() - window
		by_type = await self.repository.stats(user_id, since)
		return {
			"range": range,
			"since": since.isoformat(),
			"total": sum(entry["total"] for entry in by_type),
			"unread": sum(entry["unread"] for entry in by_type),
			"byType": by_type,
		}

	# --- devices ---------------------------------------------------------------
	async def register_device(self, user_id: str, token: str) -> bool:
		return await self.dispatcher.register_token(user_id, token)

	async def unregister_device(self, user_id: str, token: str) -> bool:
		return await self.dispatcher.unregister_token(user_id, token)


__all__ = ["NotificationService", "STATS_RANGES"]
