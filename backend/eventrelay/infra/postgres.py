"""Process-wide asyncpg pool."""

from __future__ import annotations

import asyncio
from typing import Optional

import asyncpg

from eventrelay.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None
_pool_lock = asyncio.Lock()


async def init_pool() -> asyncpg.pool.Pool:
	"""Create the pool on first use; concurrent callers share one pool."""
	global _pool
	async with _pool_lock:
		if _pool is None:
			_pool = await asyncpg.create_pool(
				dsn=settings.postgres_url,
				min_size=settings.postgres_min_pool_size,
				max_size=settings.postgres_max_pool_size,
				server_settings={"application_name": settings.service_name},
			)
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	return _pool if _pool is not None else await init_pool()


async def close_pool() -> None:
	global _pool
	async with _pool_lock:
		pool, _pool = _pool, None
	if pool is not None:
		await pool.close()


__all__ = ["close_pool", "get_pool", "init_pool"]
