"""Recipient lookup: contact addresses and channel preferences."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Protocol

from eventrelay.infra.postgres import get_pool

from .models import CHANNELS


@dataclass(slots=True)
class RecipientContact:
	user_id: str
	email: Optional[str] = None
	phone: Optional[str] = None
	timezone: str = "UTC"
	disabled_channels: FrozenSet[str] = field(default_factory=frozenset)

	def allows(self, channel: str) -> bool:
		return channel not in self.disabled_channels


class RecipientDirectory(Protocol):
	async def get(self, user_id: str) -> Optional[RecipientContact]:
		...


class InMemoryRecipientDirectory:
	"""Fallback directory used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._contacts: Dict[str, RecipientContact] = {}

	def add(
		self,
		user_id: str,
		*,
		email: Optional[str] = None,
		phone: Optional[str] = None,
		timezone: str = "UTC",
		disabled_channels=(),
	) -> RecipientContact:
		contact = RecipientContact(
			user_id=user_id,
			email=email,
			phone=phone,
			timezone=timezone,
			disabled_channels=frozenset(disabled_channels),
		)
		self._contacts[user_id] = contact
		return contact

	async def get(self, user_id: str) -> Optional[RecipientContact]:
		async with self._lock:
			return self._contacts.get(user_id)


class PostgresRecipientDirectory:
	async def get(self, user_id: str) -> Optional[RecipientContact]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT id, email, phone, timezone, disabled_channels
				FROM notification_recipients
				WHERE id = $1
				""",
				user_id,
			)
		if row is None:
			return None
		disabled = frozenset(ch for ch in (row["disabled_channels"] or ()) if ch in CHANNELS)
		return RecipientContact(
			user_id=str(row["id"]),
			email=row["email"],
			phone=row["phone"],
			timezone=row["timezone"] or "UTC",
			disabled_channels=disabled,
		)


__all__ = ["InMemoryRecipientDirectory", "PostgresRecipientDirectory", "RecipientContact", "RecipientDirectory"]
