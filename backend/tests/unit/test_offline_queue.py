import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from eventrelay.infra.cache import CacheStore
from eventrelay.infra.redis import set_redis_client
from eventrelay.notifications.devices import DeviceTokens
from eventrelay.notifications.offline_queue import OfflineQueue


class DownRedis:
	def __getattr__(self, name):
		def _fail(*args, **kwargs):
			raise RedisConnectionError("redis down")

		return _fail


@pytest.mark.asyncio
async def test_queue_keeps_newest_entries_and_drains_in_order():
	queue = OfflineQueue(CacheStore(), max_entries=3, ttl_seconds=60)
	for index in range(5):
		await queue.push("bob", {"id": f"n{index}"})

	assert await queue.size("bob") == 3
	drained = await queue.drain("bob")

	assert [entry["id"] for entry in drained] == ["n2", "n3", "n4"]
	assert await queue.drain("bob") == []


@pytest.mark.asyncio
async def test_unavailable_cache_is_reported_not_hidden():
	set_redis_client(DownRedis())
	queue = OfflineQueue(CacheStore(), max_entries=3, ttl_seconds=60)
	devices = DeviceTokens(CacheStore())

	assert await queue.push("bob", {"id": "n1"}) is None
	assert await queue.drain("bob") is None
	assert await devices.tokens("bob") is None


@pytest.mark.asyncio
async def test_dispatch_still_succeeds_when_offline_queue_is_down(runtime):
	runtime.directory.add("bob")
	set_redis_client(DownRedis())

	result = await runtime.service.dispatch_notification("bob", "system", {"message": "hello"})

	# the stored notification is the in-app delivery
	assert result.per_channel == {"in_app": "sent"}
	assert await runtime.notifications.get(result.notification.id) is not None
