"""Registered push device tokens, kept as a cache set per user."""

from __future__ import annotations

from typing import Optional, Set

from eventrelay.errors import ValidationError
from eventrelay.infra.cache import CacheStore


def tokens_key(user_id: str) -> str:
	return f"push_tokens:{user_id}"


class DeviceTokens:
	def __init__(self, cache: CacheStore) -> None:
		self.cache = cache

	async def register(self, user_id: str, token: str) -> Optional[int]:
		token = (token or "").strip()
		if not token:
			raise ValidationError("push_token_required")
		return await self.cache.set_add(tokens_key(user_id), token)

	async def unregister(self, user_id: str, *tokens: str) -> Optional[int]:
		return await self.cache.set_remove(tokens_key(user_id), *tokens)

	async def tokens(self, user_id: str) -> Optional[Set[str]]:
		return await self.cache.set_members(tokens_key(user_id))


__all__ = ["DeviceTokens", "tokens_key"]
