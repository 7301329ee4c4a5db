"""Shared Redis client for queue entries, conversations and message logs.

Modules import ``redis_client`` once; tests swap the client underneath it for
fakeredis through ``set_redis_client`` without re-importing anything.
"""

from __future__ import annotations

import time

import redis.asyncio as redis

from tandem.settings import settings


def _connect(url: str) -> redis.Redis:
	return redis.from_url(
		url,
		decode_responses=True,
		socket_timeout=settings.redis_socket_timeout_seconds,
		socket_connect_timeout=settings.redis_socket_timeout_seconds,
		health_check_interval=30,
	)


class RedisProxy:
	"""Forwards attribute access to whichever client is currently installed."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	async def ping_latency(self) -> float:
		"""Round-trip a PING and return the elapsed seconds."""
		start = time.perf_counter()
		await self._client.ping()
		return time.perf_counter() - start

	async def close(self) -> None:
		await self._client.aclose()

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client: RedisProxy = RedisProxy(_connect(settings.redis_url))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
