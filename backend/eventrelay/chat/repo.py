"""Message persistence with an in-memory fallback and an asyncpg backend."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

import ulid

from eventrelay.errors import NotFound
from eventrelay.infra.postgres import get_pool

from .models import MediaReference, Message, Reaction, ReadReceipt

REACTION_ADDED = "added"
REACTION_REMOVED = "removed"


class MessageRepository(Protocol):
	async def create(
		self,
		*,
		room_id: str,
		sender_id: str,
		type: str,
		content: str,
		created_at: datetime,
		attachment: MediaReference | None = None,
	) -> Message:
		...

	async def get(self, message_id: str) -> Optional[Message]:
		...

	async def update_content(self, message_id: str, content: str, edited_at: datetime) -> Message:
		...

	async def soft_delete(self, message_id: str, deleted_at: datetime) -> Message:
		...

	async def toggle_reaction(self, message_id: str, user_id: str, emoji: str, at: datetime) -> Tuple[Message, str]:
		...

	async def add_read_receipt(self, message_id: str, user_id: str, at: datetime) -> bool:
		...

	async def list_room(self, room_id: str, *, before: datetime | None, limit: int) -> List[Message]:
		...


def _copy(message: Message) -> Message:
	return replace(message, reactions=list(message.reactions), read_by=list(message.read_by))


class InMemoryMessageRepository:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._messages: Dict[str, Message] = {}
		self._rooms: Dict[str, List[str]] = {}

	async def create(
		self,
		*,
		room_id: str,
		sender_id: str,
		type: str,
		content: str,
		created_at: datetime,
		attachment: MediaReference | None = None,
	) -> Message:
		async with self._lock:
			message = Message(
				id=str(ulid.new()),
				room_id=room_id,
				sender_id=sender_id,
				type=type,
				content=content,
				created_at=created_at,
				attachment=attachment,
			)
			self._messages[message.id] = message
			self._rooms.setdefault(room_id, []).append(message.id)
			return _copy(message)

	async def get(self, message_id: str) -> Optional[Message]:
		async with self._lock:
			message = self._messages.get(message_id)
			return _copy(message) if message else None

	async def update_content(self, message_id: str, content: str, edited_at: datetime) -> Message:
		async with self._lock:
			message = self._messages[message_id]
			message.content = content
			message.edited_at = edited_at
			return _copy(message)

	async def soft_delete(self, message_id: str, deleted_at: datetime) -> Message:
		async with self._lock:
			message = self._messages[message_id]
			message.deleted_at = deleted_at
			return _copy(message)

	async def toggle_reaction(self, message_id: str, user_id: str, emoji: str, at: datetime) -> Tuple[Message, str]:
		async with self._lock:
			message = self._messages[message_id]
			kept = [r for r in message.reactions if not (r.user_id == user_id and r.emoji == emoji)]
			if len(kept) != len(message.reactions):
				message.reactions = kept
				return _copy(message), REACTION_REMOVED
			message.reactions.append(Reaction(user_id=user_id, emoji=emoji, reacted_at=at))
			return _copy(message), REACTION_ADDED

	async def add_read_receipt(self, message_id: str, user_id: str, at: datetime) -> bool:
		async with self._lock:
			message = self._messages[message_id]
			if message.has_read(user_id):
				return False
			message.read_by.append(ReadReceipt(user_id=user_id, read_at=at))
			return True

	async def list_room(self, room_id: str, *, before: datetime | None, limit: int) -> List[Message]:
		async with self._lock:
			messages = [self._messages[mid] for mid in self._rooms.get(room_id, [])]
			if before is not None:
				messages = [m for m in messages if m.created_at < before]
			return [_copy(m) for m in messages[-limit:]] if limit > 0 else []


def _row_to_message(row, reactions=(), reads=()) -> Message:
	attachment_raw = row["attachment"]
	if isinstance(attachment_raw, str):
		attachment_raw = json.loads(attachment_raw)
	return Message(
		id=str(row["id"]),
		room_id=str(row["room_id"]),
		sender_id=str(row["sender_id"]),
		type=str(row["type"]),
		content=str(row["content"]),
		created_at=row["created_at"],
		edited_at=row["edited_at"],
		deleted_at=row["deleted_at"],
		reactions=[Reaction(user_id=str(r["user_id"]), emoji=str(r["emoji"]), reacted_at=r["reacted_at"]) for r in reactions],
		read_by=[ReadReceipt(user_id=str(r["user_id"]), read_at=r["read_at"]) for r in reads],
		attachment=MediaReference.from_dict(attachment_raw) if attachment_raw else None,
	)


def _loaded(message: Optional[Message]) -> Message:
	# the row can vanish between the write and the re-read
	if message is None:
		raise NotFound("message_not_found")
	return message


class PostgresMessageRepository:
	"""Repository backed by asyncpg."""

	_COLUMNS = "id, room_id, sender_id, type, content, attachment, created_at, edited_at, deleted_at"

	async def _load(self, conn, message_id: str) -> Optional[Message]:
		row = await conn.fetchrow(
			f"SELECT {self._COLUMNS} FROM chat_messages WHERE id = $1",
			message_id,
		)
		if row is None:
			return None
		reactions = await conn.fetch(
			"SELECT user_id, emoji, reacted_at FROM chat_message_reactions WHERE message_id = $1 ORDER BY reacted_at",
			message_id,
		)
		reads = await conn.fetch(
			"SELECT user_id, read_at FROM chat_message_reads WHERE message_id = $1 ORDER BY read_at",
			message_id,
		)
		return _row_to_message(row, reactions, reads)

	async def create(
		self,
		*,
		room_id: str,
		sender_id: str,
		type: str,
		content: str,
		created_at: datetime,
		attachment: MediaReference | None = None,
	) -> Message:
		pool = await get_pool()
		message_id = str(ulid.new())
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO chat_messages (id, room_id, sender_id, type, content, attachment, created_at)
				VALUES ($1, $2, $3, $4, $5, $6, $7)
				""",
				message_id,
				room_id,
				sender_id,
				type,
				content,
				json.dumps(attachment.to_dict()) if attachment else None,
				created_at,
			)
		return Message(
			id=message_id,
			room_id=room_id,
			sender_id=sender_id,
			type=type,
			content=content,
			created_at=created_at,
			attachment=attachment,
		)

	async def get(self, message_id: str) -> Optional[Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await self._load(conn, message_id)

	async def update_content(self, message_id: str, content: str, edited_at: datetime) -> Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE chat_messages SET content = $2, edited_at = $3 WHERE id = $1",
				message_id,
				content,
				edited_at,
			)
			message = await self._load(conn, message_id)
		return _loaded(message)

	async def soft_delete(self, message_id: str, deleted_at: datetime) -> Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE chat_messages SET deleted_at = $2 WHERE id = $1 AND deleted_at IS NULL",
				message_id,
				deleted_at,
			)
			message = await self._load(conn, message_id)
		return _loaded(message)

	async def toggle_reaction(self, message_id: str, user_id: str, emoji: str, at: datetime) -> Tuple[Message, str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				removed = await conn.fetchval(
					"""
					DELETE FROM chat_message_reactions
					WHERE message_id = $1 AND user_id = $2 AND emoji = $3
					RETURNING 1
					""",
					message_id,
					user_id,
					emoji,
				)
				if removed is None:
					await conn.execute(
						"""
						INSERT INTO chat_message_reactions (message_id, user_id, emoji, reacted_at)
						VALUES ($1, $2, $3, $4)
						ON CONFLICT DO NOTHING
						""",
						message_id,
						user_id,
						emoji,
						at,
					)
				message = await self._load(conn, message_id)
		return _loaded(message), REACTION_REMOVED if removed is not None else REACTION_ADDED

	async def add_read_receipt(self, message_id: str, user_id: str, at: datetime) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			inserted = await conn.fetchval(
				"""
				INSERT INTO chat_message_reads (message_id, user_id, read_at)
				VALUES ($1, $2, $3)
				ON CONFLICT DO NOTHING
				RETURNING 1
				""",
				message_id,
				user_id,
				at,
			)
		return inserted is not None

	async def list_room(self, room_id: str, *, before: datetime | None, limit: int) -> List[Message]:
		pool = await get_pool()
		params: List[object] = [room_id, limit]
		where_clause = ""
		if before is not None:
			params.append(before)
			where_clause = " AND created_at < $3"
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {self._COLUMNS} FROM (
					SELECT {self._COLUMNS}, seq FROM chat_messages
					WHERE room_id = $1{where_clause}
					ORDER BY seq DESC
					LIMIT $2
				) page
				ORDER BY seq ASC
				""",
				*params,
			)
			messages: List[Message] = []
			for row in rows:
				loaded = await self._load(conn, str(row["id"]))
				if loaded is not None:
					messages.append(loaded)
		return messages


__all__ = [
	"InMemoryMessageRepository",
	"MessageRepository",
	"PostgresMessageRepository",
	"REACTION_ADDED",
	"REACTION_REMOVED",
]
