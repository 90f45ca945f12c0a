"""Ephemeral cache store with explicit availability signalling.

Every call returns ``None`` when Redis cannot be reached so callers choose their
own fallback instead of the store silently pretending the write happened.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Set

from redis.exceptions import RedisError

from eventrelay.infra.redis import RedisProxy, redis_client

_LOG = logging.getLogger(__name__)

_UNAVAILABLE = (RedisError, ConnectionError, OSError)


class CacheStore:
	def __init__(self, client: RedisProxy | None = None) -> None:
		self._client = client or redis_client

	def _unavailable(self, op: str, key: str, exc: Exception) -> None:
		_LOG.warning("cache.unavailable", extra={"op": op, "key": key, "error": str(exc)})

	async def get(self, key: str) -> Optional[str]:
		try:
			return await self._client.get(key)
		except _UNAVAILABLE as exc:
			self._unavailable("get", key, exc)
			return None

	async def set(self, key: str, value: str, *, ttl: int | None = None) -> Optional[bool]:
		try:
			await self._client.set(key, value, ex=ttl)
			return True
		except _UNAVAILABLE as exc:
			self._unavailable("set", key, exc)
			return None

	async def delete(self, key: str) -> Optional[int]:
		try:
			return int(await self._client.delete(key))
		except _UNAVAILABLE as exc:
			self._unavailable("delete", key, exc)
			return None

	async def append_capped(self, key: str, value: str, *, max_len: int, ttl: int) -> Optional[int]:
		"""Append to a list keeping only the newest ``max_len`` entries; returns the list length."""
		try:
			async with self._client.pipeline(transaction=True) as pipe:
				pipe.rpush(key, value)
				pipe.ltrim(key, -max_len, -1)
				pipe.expire(key, ttl)
				pipe.llen(key)
				results = await pipe.execute()
			return int(results[-1])
		except _UNAVAILABLE as exc:
			self._unavailable("append_capped", key, exc)
			return None

	async def drain_list(self, key: str) -> Optional[List[str]]:
		"""Return every entry oldest first and remove the list atomically."""
		try:
			async with self._client.pipeline(transaction=True) as pipe:
				pipe.lrange(key, 0, -1)
				pipe.delete(key)
				results = await pipe.execute()
			return list(results[0] or [])
		except _UNAVAILABLE as exc:
			self._unavailable("drain_list", key, exc)
			return None

	async def list_length(self, key: str) -> Optional[int]:
		try:
			return int(await self._client.llen(key))
		except _UNAVAILABLE as exc:
			self._unavailable("list_length", key, exc)
			return None

	async def set_add(self, key: str, *members: str) -> Optional[int]:
		if not members:
			return 0
		try:
			return int(await self._client.sadd(key, *members))
		except _UNAVAILABLE as exc:
			self._unavailable("set_add", key, exc)
			return None

	async def set_remove(self, key: str, *members: str) -> Optional[int]:
		if not members:
			return 0
		try:
			return int(await self._client.srem(key, *members))
		except _UNAVAILABLE as exc:
			self._unavailable("set_remove", key, exc)
			return None

	async def set_members(self, key: str) -> Optional[Set[str]]:
		try:
			return set(await self._client.smembers(key))
		except _UNAVAILABLE as exc:
			self._unavailable("set_members", key, exc)
			return None


__all__ = ["CacheStore"]
