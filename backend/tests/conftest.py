import sys
from pathlib import Path
from typing import Dict, List, Sequence, Set

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from eventrelay.infra import postgres
from eventrelay.infra.gateways import GatewayResult, PushMessage, PushTicket
from eventrelay.infra.redis import redis_client, set_redis_client
from eventrelay.runtime import build_runtime
from eventrelay.settings import settings


class FakeHandle:
	"""Transport handle recording every event it receives."""

	def __init__(self, name: str, *, fail: bool = False) -> None:
		self.name = name
		self.fail = fail
		self.events: List[tuple] = []

	async def send(self, event: str, payload: object) -> None:
		if self.fail:
			raise RuntimeError("transport closed")
		self.events.append((event, payload))

	def named(self, event: str) -> list:
		return [payload for name, payload in self.events if name == event]

	def __repr__(self) -> str:
		return f"FakeHandle({self.name})"


class FakePushGateway:
	def __init__(self, *, max_batch: int = 100, invalid: Sequence[str] = (), failing: Sequence[str] = ()) -> None:
		self.max_batch = max_batch
		self.invalid: Set[str] = set(invalid)
		self.failing: Set[str] = set(failing)
		self.batches: List[List[str]] = []
		self.messages: List[PushMessage] = []

	async def send_batch(self, tokens: Sequence[str], message: PushMessage) -> List[PushTicket]:
		self.batches.append(list(tokens))
		self.messages.append(message)
		tickets = []
		for token in tokens:
			if token in self.invalid:
				tickets.append(PushTicket(token=token, success=False, error_code="DeviceNotRegistered"))
			elif token in self.failing:
				tickets.append(PushTicket(token=token, success=False, error_code="MessageRateExceeded"))
			else:
				tickets.append(PushTicket(token=token, success=True))
		return tickets


class FakeEmailGateway:
	def __init__(self, *, success: bool = True) -> None:
		self.success = success
		self.sent: List[Dict[str, str]] = []

	async def send(self, address: str, subject: str, body: str) -> GatewayResult:
		self.sent.append({"address": address, "subject": subject, "body": body})
		return GatewayResult(success=self.success, error=None if self.success else "smtp_error")


class FakeSmsGateway:
	def __init__(self, *, success: bool = True) -> None:
		self.success = success
		self.sent: List[Dict[str, str]] = []

	async def send(self, phone: str, body: str) -> GatewayResult:
		self.sent.append({"phone": phone, "body": body})
		return GatewayResult(success=self.success, error=None if self.success else "sms_error")


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	original_env = settings.environment
	original_scheduler = settings.scheduler_enabled
	original_postgres = settings.postgres_enabled
	settings.environment = "dev"
	settings.scheduler_enabled = False
	settings.postgres_enabled = False
	try:
		yield
	finally:
		settings.environment = original_env
		settings.scheduler_enabled = original_scheduler
		settings.postgres_enabled = original_postgres


@pytest.fixture
def push_gateway():
	return FakePushGateway()


@pytest.fixture
def email_gateway():
	return FakeEmailGateway()


@pytest.fixture
def sms_gateway():
	return FakeSmsGateway()


@pytest.fixture
def runtime(push_gateway, email_gateway, sms_gateway):
	return build_runtime(
		use_postgres=False,
		push_gateway=push_gateway,
		email_gateway=email_gateway,
		sms_gateway=sms_gateway,
	)


@pytest_asyncio.fixture
async def api_client(runtime):
	from eventrelay.main import create_app

	app = create_app(runtime)
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def make_handle():
	return FakeHandle
