"""Bounded per-user queue of notifications that arrived while the user was offline."""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from eventrelay.infra.cache import CacheStore
from eventrelay.obs import metrics as obs_metrics
from eventrelay.settings import settings

_LOG = logging.getLogger(__name__)


def queue_key(user_id: str) -> str:
	return f"offline_notifications:{user_id}"


class OfflineQueue:
	def __init__(
		self,
		cache: CacheStore,
		*,
		max_entries: int | None = None,
		ttl_seconds: int | None = None,
	) -> None:
		self.cache = cache
		self.max_entries = max_entries or settings.offline_queue_max
		self.ttl_seconds = ttl_seconds or settings.offline_queue_ttl_seconds

	async def push(self, user_id: str, entry: dict) -> Optional[int]:
		"""Append ``entry``; returns the queue length or None when the cache is down."""
		length = await self.cache.append_capped(
			queue_key(user_id),
			json.dumps(entry, default=str),
			max_len=self.max_entries,
			ttl=self.ttl_seconds,
		)
		if length is not None:
			obs_metrics.offline_queue("append")
		return length

	async def drain(self, user_id: str) -> Optional[List[dict]]:
		"""Return queued entries oldest first and clear the queue."""
		raw = await self.cache.drain_list(queue_key(user_id))
		if raw is None:
			return None
		entries: List[dict] = []
		for item in raw:
			try:
				entries.append(json.loads(item))
			except (TypeError, ValueError):
				_LOG.warning("offline_queue.bad_entry", extra={"user_id": user_id})
		if entries:
			obs_metrics.offline_queue("drain", len(entries))
		return entries

	async def size(self, user_id: str) -> Optional[int]:
		return await self.cache.list_length(queue_key(user_id))


__all__ = ["OfflineQueue", "queue_key"]
