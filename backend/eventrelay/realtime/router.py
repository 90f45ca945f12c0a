"""Room fan-out on top of the connection registry."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Hashable, Iterable, Optional

from eventrelay.obs import metrics as obs_metrics
from eventrelay.settings import settings

from .registry import ConnectionRegistry

_LOG = logging.getLogger(__name__)


def _exclusions(exclude: Hashable | Iterable[Hashable] | None) -> frozenset:
	if exclude is None:
		return frozenset()
	if isinstance(exclude, (set, frozenset, list, tuple)):
		return frozenset(exclude)
	return frozenset((exclude,))


class RoomRouter:
	"""Sends events to room members and single users.

	Membership is snapshotted under the registry lock; the sends happen after it
	is released. A failed or timed out send is logged and skipped, never retried.
	"""

	def __init__(self, registry: ConnectionRegistry, *, timeout: float | None = None) -> None:
		self.registry = registry
		self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds

	async def _send(self, handle: Hashable, event: str, payload: Any) -> bool:
		try:
			await asyncio.wait_for(handle.send(event, payload), timeout=self.timeout)  # type: ignore[attr-defined]
			return True
		except asyncio.TimeoutError:
			_LOG.warning("router.send_timeout", extra={"event": event, "handle": repr(handle)})
		except Exception:
			_LOG.exception("router.send_failed", extra={"event": event, "handle": repr(handle)})
		obs_metrics.inc_broadcast_failure(event)
		return False

	async def _fan_out(self, handles: Iterable[Hashable], event: str, payload: Any) -> int:
		targets = list(handles)
		if not targets:
			return 0
		results = await asyncio.gather(*(self._send(handle, event, payload) for handle in targets))
		return sum(1 for ok in results if ok)

	async def broadcast(
		self,
		room_id: str,
		event: str,
		payload: Any,
		*,
		exclude: Hashable | Iterable[Hashable] | None = None,
	) -> int:
		"""Send ``payload`` to every live member of ``room_id``; returns successful sends."""
		skip = _exclusions(exclude)
		members = [handle for handle in self.registry.members(room_id) if handle not in skip]
		return await self._fan_out(members, event, payload)

	async def broadcast_all(
		self,
		event: str,
		payload: Any,
		*,
		exclude: Hashable | Iterable[Hashable] | None = None,
	) -> int:
		skip = _exclusions(exclude)
		handles = [handle for handle in self.registry.all_handles() if handle not in skip]
		return await self._fan_out(handles, event, payload)

	async def send_to_user(self, user_id: str, event: str, payload: Any) -> bool:
		"""Deliver to the user's live connection; False when offline or the send failed."""
		handle = self.registry.handle_for(user_id)
		if handle is None:
			return False
		return await self._send(handle, event, payload)

	async def send_to_handle(self, handle: Hashable, event: str, payload: Any) -> bool:
		return await self._send(handle, event, payload)

	async def announce_presence(
		self,
		user_id: str,
		status: str,
		*,
		last_seen: Optional[datetime] = None,
	) -> int:
		payload = {
			"userId": user_id,
			"status": status,
			"lastSeen": (last_seen or datetime.now(timezone.utc)).isoformat(),
		}
		own = self.registry.handle_for(user_id)
		stats = self.registry.stats()
		obs_metrics.set_presence(stats["online_users"], stats["rooms"])
		return await self.broadcast_all("user-status-update", payload, exclude=own)


__all__ = ["RoomRouter"]
