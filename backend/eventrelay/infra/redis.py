"""Shared Redis client.

Modules import ``redis_client`` once; the proxy lets tests point it at fakeredis
without re-importing anything.
"""

from __future__ import annotations

import redis.asyncio as redis

from eventrelay.settings import settings


class RedisProxy:
	"""Forwards every command to whichever client is currently installed."""

	def __init__(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	def __getattr__(self, name: str):
		return getattr(self._client, name)


def _connect() -> redis.Redis:
	# connection is lazy; nothing is dialled until the first command
	return redis.from_url(
		settings.redis_url,
		decode_responses=True,
		socket_timeout=settings.gateway_timeout_seconds,
		health_check_interval=30,
	)


redis_client = RedisProxy(_connect())


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)


__all__ = ["RedisProxy", "redis_client", "set_redis_client"]
