from __future__ import annotations

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from tandem.domain.conversations import lifecycle
from tandem.domain.conversations.links import memory_links
from tandem.domain.directory import memory_directory, set_directory
from tandem.domain.matching import service as match_service
from tandem.domain.realtime import events
from tandem.infra import postgres
from tandem.infra.redis import redis_client
from tandem.settings import settings


class RecordingNamespace:
	"""Stands in for the Socket.IO namespace and records every fan-out emit."""

	namespace = events.NAMESPACE

	def __init__(self) -> None:
		self.emitted: list[tuple[str, dict, str]] = []

	async def emit(self, event, data, room=None, skip_sid=None, **kwargs):
		self.emitted.append((event, data, room))

	def to_user(self, user_id: str, event: str | None = None) -> list[dict]:
		room = events.user_room(user_id)
		return [data for name, data, target in self.emitted if target == room and (event is None or name == event)]

	def named(self, event: str) -> list[tuple[dict, str]]:
		return [(data, room) for name, data, room in self.emitted if name == event]


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	redis_client.set_client(client)
	try:
		yield client
	finally:
		redis_client.set_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	monkeypatch.setattr(postgres, "_pool", None)
	monkeypatch.setattr(postgres, "_unavailable", True)


@pytest.fixture(autouse=True)
def reset_domain_state():
	memory_directory().reset()
	memory_links().reset()
	set_directory(None)
	lifecycle.set_lifecycle(None)
	match_service.set_match_service(None)
	yield
	memory_directory().reset()
	memory_links().reset()


@pytest.fixture(autouse=True)
def fanout():
	previous = events.get_namespace()
	recorder = RecordingNamespace()
	events.set_namespace(recorder)
	try:
		yield recorder
	finally:
		events.set_namespace(previous)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate with X-User-Id, which is only honoured in dev."""
	original_env = settings.environment
	original_delay = settings.store_retry_base_delay_seconds
	settings.environment = "dev"
	settings.store_retry_base_delay_seconds = 0.0
	try:
		yield
	finally:
		settings.environment = original_env
		settings.store_retry_base_delay_seconds = original_delay


@pytest.fixture
def directory():
	return memory_directory()


@pytest_asyncio.fixture
async def api_client(fanout):
	from tandem.main import app

	events.set_namespace(fanout)
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
