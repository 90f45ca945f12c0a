"""Notification and scheduled-notification persistence."""

from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from eventrelay.infra.postgres import get_pool

from .models import (
	CANCELLED,
	DELETED,
	FAILED,
	PENDING,
	PROCESSING,
	READ,
	TERMINAL_STATUSES,
	UNREAD,
	ChannelDelivery,
	Conditions,
	Notification,
	NotificationTemplate,
	Recurrence,
	ScheduledNotification,
)


class NotificationRepository(Protocol):
	async def create(self, notification: Notification) -> Notification:
		...

	async def get(self, notification_id: str) -> Optional[Notification]:
		...

	async def update_delivery(self, notification_id: str, delivery: Dict[str, ChannelDelivery]) -> None:
		...

	async def update_status(
		self, notification_id: str, status: str, *, read_at: Optional[datetime] = None
	) -> Optional[Notification]:
		...

	async def mark_all_read(self, user_id: str, at: datetime) -> int:
		...

	async def list_for_user(
		self,
		user_id: str,
		*,
		status: Optional[str] = None,
		category: Optional[str] = None,
		type: Optional[str] = None,
		offset: int = 0,
		limit: int = 20,
	) -> Tuple[List[Notification], int]:
		...

	async def unread_count(self, user_id: str) -> int:
		...

	async def stats(self, user_id: str, since: datetime) -> List[dict]:
		...

	async def purge_read_before(self, cutoff: datetime) -> int:
		...


class ScheduledRepository(Protocol):
	async def create(self, row: ScheduledNotification) -> ScheduledNotification:
		...

	async def get(self, scheduled_id: str) -> Optional[ScheduledNotification]:
		...

	async def save(self, row: ScheduledNotification) -> ScheduledNotification:
		...

	async def due(self, now: datetime, limit: int) -> List[ScheduledNotification]:
		...

	async def claim(self, scheduled_id: str, now: datetime) -> Optional[ScheduledNotification]:
		...

	async def cancel(self, scheduled_id: str, now: datetime) -> bool:
		...

	async def cancel_where(self, now: datetime, *, user_id: Optional[str] = None, batch_id: Optional[str] = None) -> int:
		...

	async def list_for_user(self, user_id: str, *, pending_only: bool = False, limit: int = 50) -> List[ScheduledNotification]:
		...

	async def release_stale(self, cutoff: datetime, now: datetime) -> int:
		...

	async def purge_terminal_before(self, cutoff: datetime) -> int:
		...


def _visible(notification: Notification, status: Optional[str]) -> bool:
	if status is None:
		return notification.status != DELETED
	return notification.status == status


def _group_stats(items: Sequence[Notification]) -> List[dict]:
	grouped: Dict[str, dict] = {}
	for item in items:
		entry = grouped.setdefault(item.type, {"type": item.type, "total": 0, "unread": 0, "read": 0})
		entry["total"] += 1
		if item.status == UNREAD:
			entry["unread"] += 1
		elif item.status == READ:
			entry["read"] += 1
	return sorted(grouped.values(), key=lambda entry: (-entry["total"], entry["type"]))


class InMemoryNotificationRepository:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._items: Dict[str, Notification] = {}

	async def create(self, notification: Notification) -> Notification:
		async with self._lock:
			self._items[notification.id] = copy.deepcopy(notification)
			return notification

	async def get(self, notification_id: str) -> Optional[Notification]:
		async with self._lock:
			item = self._items.get(notification_id)
			return copy.deepcopy(item) if item else None

	async def update_delivery(self, notification_id: str, delivery: Dict[str, ChannelDelivery]) -> None:
		async with self._lock:
			item = self._items.get(notification_id)
			if item is not None:
				item.delivery = copy.deepcopy(delivery)

	async def update_status(
		self, notification_id: str, status: str, *, read_at: Optional[datetime] = None
	) -> Optional[Notification]:
		async with self._lock:
			item = self._items.get(notification_id)
			if item is None:
				return None
			item.status = status
			if read_at is not None:
				item.read_at = read_at
			return copy.deepcopy(item)

	async def mark_all_read(self, user_id: str, at: datetime) -> int:
		async with self._lock:
			count = 0
			for item in self._items.values():
				if item.recipient_id == user_id and item.status == UNREAD:
					item.status = READ
					item.read_at = at
					count += 1
			return count

	async def list_for_user(
		self,
		user_id: str,
		*,
		status: Optional[str] = None,
		category: Optional[str] = None,
		type: Optional[str] = None,
		offset: int = 0,
		limit: int = 20,
	) -> Tuple[List[Notification], int]:
		async with self._lock:
			items = [
				item
				for item in self._items.values()
				if item.recipient_id == user_id
				and _visible(item, status)
				and (category is None or item.category == category)
				and (type is None or item.type == type)
			]
			items.sort(key=lambda item: item.created_at, reverse=True)
			page = items[offset : offset + limit]
			return [copy.deepcopy(item) for item in page], len(items)

	async def unread_count(self, user_id: str) -> int:
		async with self._lock:
			return sum(1 for item in self._items.values() if item.recipient_id == user_id and item.status == UNREAD)

	async def stats(self, user_id: str, since: datetime) -> List[dict]:
		async with self._lock:
			items = [
				item
				for item in self._items.values()
				if item.recipient_id == user_id and item.created_at >= since and item.status != DELETED
			]
			return _group_stats(items)

	async def purge_read_before(self, cutoff: datetime) -> int:
		async with self._lock:
			doomed = [
				key
				for key, item in self._items.items()
				if item.status == READ and (item.read_at or item.created_at) < cutoff
			]
			for key in doomed:
				del self._items[key]
			return len(doomed)


class InMemoryScheduledRepository:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._rows: Dict[str, ScheduledNotification] = {}

	async def create(self, row: ScheduledNotification) -> ScheduledNotification:
		async with self._lock:
			self._rows[row.id] = copy.deepcopy(row)
			return row

	async def get(self, scheduled_id: str) -> Optional[ScheduledNotification]:
		async with self._lock:
			row = self._rows.get(scheduled_id)
			return copy.deepcopy(row) if row else None

	async def save(self, row: ScheduledNotification) -> ScheduledNotification:
		async with self._lock:
			current = self._rows.get(row.id)
			# a cancel that landed while the row was processing wins
			if current is not None and current.status == CANCELLED and row.status != CANCELLED:
				return row
			self._rows[row.id] = copy.deepcopy(row)
			return row

	async def due(self, now: datetime, limit: int) -> List[ScheduledNotification]:
		async with self._lock:
			rows = [
				row
				for row in self._rows.values()
				if row.status == PENDING
				and row.scheduled_time <= now
				and row.execution_attempts < row.max_execution_attempts
			]
			rows.sort(key=lambda row: (row.scheduled_time, -row.priority_rank))
			return [copy.deepcopy(row) for row in rows[:limit]]

	async def claim(self, scheduled_id: str, now: datetime) -> Optional[ScheduledNotification]:
		async with self._lock:
			row = self._rows.get(scheduled_id)
			if (
				row is None
				or row.status != PENDING
				or row.scheduled_time > now
				or row.execution_attempts >= row.max_execution_attempts
			):
				return None
			row.status = PROCESSING
			row.execution_attempts += 1
			row.last_execution_attempt = now
			row.updated_at = now
			return copy.deepcopy(row)

	async def cancel(self, scheduled_id: str, now: datetime) -> bool:
		async with self._lock:
			row = self._rows.get(scheduled_id)
			if row is None or row.status not in (PENDING, PROCESSING):
				return False
			row.status = CANCELLED
			row.updated_at = now
			return True

	async def cancel_where(self, now: datetime, *, user_id: Optional[str] = None, batch_id: Optional[str] = None) -> int:
		async with self._lock:
			count = 0
			for row in self._rows.values():
				if row.status != PENDING:
					continue
				if user_id is not None and row.user_id != user_id:
					continue
				if batch_id is not None and row.batch_id != batch_id:
					continue
				row.status = CANCELLED
				row.updated_at = now
				count += 1
			return count

	async def list_for_user(self, user_id: str, *, pending_only: bool = False, limit: int = 50) -> List[ScheduledNotification]:
		async with self._lock:
			rows = [
				row
				for row in self._rows.values()
				if row.user_id == user_id and (not pending_only or row.status == PENDING)
			]
			rows.sort(key=lambda row: row.scheduled_time)
			return [copy.deepcopy(row) for row in rows[:limit]]

	async def release_stale(self, cutoff: datetime, now: datetime) -> int:
		"""Hand rows stuck in processing since before ``cutoff`` back to the sweep."""
		async with self._lock:
			count = 0
			for row in self._rows.values():
				if row.status != PROCESSING:
					continue
				if (row.last_execution_attempt or row.updated_at) >= cutoff:
					continue
				row.status = FAILED if row.execution_attempts >= row.max_execution_attempts else PENDING
				row.execution_error = "processing_lease_expired"
				row.updated_at = now
				count += 1
			return count

	async def purge_terminal_before(self, cutoff: datetime) -> int:
		async with self._lock:
			doomed = [
				key
				for key, row in self._rows.items()
				if row.status in TERMINAL_STATUSES and row.updated_at < cutoff
			]
			for key in doomed:
				del self._rows[key]
			return len(doomed)


# --- asyncpg -----------------------------------------------------------------


def _json_load(value: Any) -> Any:
	if value is None:
		return None
	if isinstance(value, str):
		return json.loads(value)
	return value


def _json_dump(value: Any) -> Optional[str]:
	if value is None:
		return None
	return json.dumps(value, default=str)


def _notification_from_row(row) -> Notification:
	delivery_raw = _json_load(row["delivery"]) or {}
	return Notification(
		id=str(row["id"]),
		recipient_id=str(row["recipient_id"]),
		sender_id=row["sender_id"],
		type=str(row["type"]),
		title=str(row["title"]),
		body=str(row["body"]),
		data=_json_load(row["data"]) or {},
		priority=str(row["priority"]),
		category=str(row["category"]),
		channels=tuple(row["channels"] or ()),
		status=str(row["status"]),
		read_at=row["read_at"],
		created_at=row["created_at"],
		delivery={channel: ChannelDelivery.from_dict(state) for channel, state in delivery_raw.items()},
	)


def _delivery_json(delivery: Dict[str, ChannelDelivery]) -> str:
	return json.dumps({channel: state.to_dict() for channel, state in delivery.items()})


class PostgresNotificationRepository:
	_COLUMNS = (
		"id, recipient_id, sender_id, type, title, body, data, priority, category, "
		"channels, status, read_at, created_at, delivery"
	)

	async def create(self, notification: Notification) -> Notification:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO notifications (
					id, recipient_id, sender_id, type, title, body, data, priority,
					category, channels, status, read_at, created_at, delivery
				) VALUES ($1,$2,$3,$4,$5,$6,$7::jsonb,$8,$9,$10,$11,$12,$13,$14::jsonb)
				""",
				notification.id,
				notification.recipient_id,
				notification.sender_id,
				notification.type,
				notification.title,
				notification.body,
				_json_dump(notification.data),
				notification.priority,
				notification.category,
				list(notification.channels),
				notification.status,
				notification.read_at,
				notification.created_at,
				_delivery_json(notification.delivery),
			)
		return notification

	async def get(self, notification_id: str) -> Optional[Notification]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {self._COLUMNS} FROM notifications WHERE id = $1", notification_id)
		return _notification_from_row(row) if row else None

	async def update_delivery(self, notification_id: str, delivery: Dict[str, ChannelDelivery]) -> None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE notifications SET delivery = $2::jsonb WHERE id = $1",
				notification_id,
				_delivery_json(delivery),
			)

	async def update_status(
		self, notification_id: str, status: str, *, read_at: Optional[datetime] = None
	) -> Optional[Notification]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				UPDATE notifications
				SET status = $2, read_at = COALESCE($3, read_at)
				WHERE id = $1
				RETURNING {self._COLUMNS}
				""",
				notification_id,
				status,
				read_at,
			)
		return _notification_from_row(row) if row else None

	async def mark_all_read(self, user_id: str, at: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"UPDATE notifications SET status = 'read', read_at = $2 WHERE recipient_id = $1 AND status = 'unread'",
				user_id,
				at,
			)
		return int(result.split()[-1])

	async def list_for_user(
		self,
		user_id: str,
		*,
		status: Optional[str] = None,
		category: Optional[str] = None,
		type: Optional[str] = None,
		offset: int = 0,
		limit: int = 20,
	) -> Tuple[List[Notification], int]:
		clauses = ["recipient_id = $1"]
		params: List[object] = [user_id]
		if status is None:
			clauses.append("status <> 'deleted'")
		else:
			params.append(status)
			clauses.append(f"status = ${len(params)}")
		if category is not None:
			params.append(category)
			clauses.append(f"category = ${len(params)}")
		if type is not None:
			params.append(type)
			clauses.append(f"type = ${len(params)}")
		where = " AND ".join(clauses)
		pool = await get_pool()
		async with pool.acquire() as conn:
			total = await conn.fetchval(f"SELECT COUNT(*) FROM notifications WHERE {where}", *params)
			rows = await conn.fetch(
				f"""
				SELECT {self._COLUMNS} FROM notifications
				WHERE {where}
				ORDER BY created_at DESC
				OFFSET ${len(params) + 1} LIMIT ${len(params) + 2}
				""",
				*params,
				offset,
				limit,
			)
		return [_notification_from_row(row) for row in rows], int(total or 0)

	async def unread_count(self, user_id: str) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			value = await conn.fetchval(
				"SELECT COUNT(*) FROM notifications WHERE recipient_id = $1 AND status = 'unread'",
				user_id,
			)
		return int(value or 0)

	async def stats(self, user_id: str, since: datetime) -> List[dict]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT type,
					COUNT(*) AS total,
					COUNT(*) FILTER (WHERE status = 'unread') AS unread,
					COUNT(*) FILTER (WHERE status = 'read') AS read
				FROM notifications
				WHERE recipient_id = $1 AND created_at >= $2 AND status <> 'deleted'
				GROUP BY type
				ORDER BY total DESC, type ASC
				""",
				user_id,
				since,
			)
		return [
			{"type": row["type"], "total": int(row["total"]), "unread": int(row["unread"]), "read": int(row["read"])}
			for row in rows
		]

	async def purge_read_before(self, cutoff: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"DELETE FROM notifications WHERE status = 'read' AND COALESCE(read_at, created_at) < $1",
				cutoff,
			)
		return int(result.split()[-1])


def _scheduled_from_row(row) -> ScheduledNotification:
	recurrence = _json_load(row["recurrence"])
	conditions = _json_load(row["conditions"])
	return ScheduledNotification(
		id=str(row["id"]),
		user_id=str(row["user_id"]),
		template=NotificationTemplate.from_dict(_json_load(row["template"])),
		channels=tuple(row["channels"] or ()),
		scheduled_time=row["scheduled_time"],
		status=str(row["status"]),
		execution_attempts=int(row["execution_attempts"]),
		max_execution_attempts=int(row["max_execution_attempts"]),
		last_execution_attempt=row["last_execution_attempt"],
		execution_error=row["execution_error"],
		executed_at=row["executed_at"],
		result=_json_load(row["result"]),
		recurrence=Recurrence.from_dict(recurrence) if recurrence else None,
		conditions=Conditions.from_dict(conditions) if conditions else None,
		source=str(row["source"]),
		batch_id=row["batch_id"],
		created_at=row["created_at"],
		updated_at=row["updated_at"],
	)


class PostgresScheduledRepository:
	_COLUMNS = (
		"id, user_id, template, channels, scheduled_time, status, execution_attempts, "
		"max_execution_attempts, last_execution_attempt, execution_error, executed_at, result, "
		"recurrence, conditions, source, batch_id, created_at, updated_at"
	)

	def _values(self, row: ScheduledNotification) -> list:
		return [
			row.id,
			row.user_id,
			_json_dump(row.template.to_dict()),
			list(row.channels),
			row.scheduled_time,
			row.priority_rank,
			row.status,
			row.execution_attempts,
			row.max_execution_attempts,
			row.last_execution_attempt,
			row.execution_error,
			row.executed_at,
			_json_dump(row.result),
			_json_dump(row.recurrence.to_dict() if row.recurrence else None),
			_json_dump(row.conditions.to_dict() if row.conditions else None),
			row.source,
			row.batch_id,
			row.created_at,
			row.updated_at,
		]

	async def create(self, row: ScheduledNotification) -> ScheduledNotification:
		return await self.save(row)

	async def save(self, row: ScheduledNotification) -> ScheduledNotification:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO scheduled_notifications (
					id, user_id, template, channels, scheduled_time, priority_rank, status,
					execution_attempts, max_execution_attempts, last_execution_attempt,
					execution_error, executed_at, result, recurrence, conditions, source,
					batch_id, created_at, updated_at
				) VALUES (
					$1,$2,$3::jsonb,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13::jsonb,$14::jsonb,$15::jsonb,$16,$17,$18,$19
				)
				ON CONFLICT (id) DO UPDATE SET
					template = EXCLUDED.template,
					channels = EXCLUDED.channels,
					scheduled_time = EXCLUDED.scheduled_time,
					priority_rank = EXCLUDED.priority_rank,
					status = EXCLUDED.status,
					execution_attempts = EXCLUDED.execution_attempts,
					max_execution_attempts = EXCLUDED.max_execution_attempts,
					last_execution_attempt = EXCLUDED.last_execution_attempt,
					execution_error = EXCLUDED.execution_error,
					executed_at = EXCLUDED.executed_at,
					result = EXCLUDED.result,
					recurrence = EXCLUDED.recurrence,
					conditions = EXCLUDED.conditions,
					updated_at = EXCLUDED.updated_at
				WHERE scheduled_notifications.status <> 'cancelled'
				""",
				*self._values(row),
			)
		return row

	async def get(self, scheduled_id: str) -> Optional[ScheduledNotification]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"SELECT {self._COLUMNS} FROM scheduled_notifications WHERE id = $1",
				scheduled_id,
			)
		return _scheduled_from_row(row) if row else None

	async def due(self, now: datetime, limit: int) -> List[ScheduledNotification]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {self._COLUMNS} FROM scheduled_notifications
				WHERE status = 'pending'
					AND scheduled_time <= $1
					AND execution_attempts < max_execution_attempts
				ORDER BY scheduled_time ASC, priority_rank DESC
				LIMIT $2
				""",
				now,
				limit,
			)
		return [_scheduled_from_row(row) for row in rows]

	async def claim(self, scheduled_id: str, now: datetime) -> Optional[ScheduledNotification]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				UPDATE scheduled_notifications
				SET status = 'processing',
					execution_attempts = execution_attempts + 1,
					last_execution_attempt = $2,
					updated_at = $2
				WHERE id = $1
					AND status = 'pending'
					AND scheduled_time <= $2
					AND execution_attempts < max_execution_attempts
				RETURNING {self._COLUMNS}
				""",
				scheduled_id,
				now,
			)
		return _scheduled_from_row(row) if row else None

	async def cancel(self, scheduled_id: str, now: datetime) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				UPDATE scheduled_notifications SET status = 'cancelled', updated_at = $2
				WHERE id = $1 AND status IN ('pending', 'processing')
				""",
				scheduled_id,
				now,
			)
		return result.endswith(" 1")

	async def cancel_where(self, now: datetime, *, user_id: Optional[str] = None, batch_id: Optional[str] = None) -> int:
		clauses = ["status = 'pending'"]
		params: List[object] = [now]
		if user_id is not None:
			params.append(user_id)
			clauses.append(f"user_id = ${len(params)}")
		if batch_id is not None:
			params.append(batch_id)
			clauses.append(f"batch_id = ${len(params)}")
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				f"UPDATE scheduled_notifications SET status = 'cancelled', updated_at = $1 WHERE {' AND '.join(clauses)}",
				*params,
			)
		return int(result.split()[-1])

	async def list_for_user(self, user_id: str, *, pending_only: bool = False, limit: int = 50) -> List[ScheduledNotification]:
		status_clause = " AND status = 'pending'" if pending_only else ""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {self._COLUMNS} FROM scheduled_notifications
				WHERE user_id = $1{status_clause}
				ORDER BY scheduled_time ASC
				LIMIT $2
				""",
				user_id,
				limit,
			)
		return [_scheduled_from_row(row) for row in rows]

	async def release_stale(self, cutoff: datetime, now: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				UPDATE scheduled_notifications
				SET status = CASE
						WHEN execution_attempts >= max_execution_attempts THEN 'failed'
						ELSE 'pending'
					END,
					execution_error = 'processing_lease_expired',
					updated_at = $2
				WHERE status = 'processing'
					AND COALESCE(last_execution_attempt, updated_at) < $1
				""",
				cutoff,
				now,
			)
		return int(result.split()[-1])

	async def purge_terminal_before(self, cutoff: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				DELETE FROM scheduled_notifications
				WHERE status IN ('expired', 'failed', 'cancelled') AND updated_at < $1
				""",
				cutoff,
			)
		return int(result.split()[-1])


__all__ = [
	"InMemoryNotificationRepository",
	"InMemoryScheduledRepository",
	"NotificationRepository",
	"PostgresNotificationRepository",
	"PostgresScheduledRepository",
	"ScheduledRepository",
]
