import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tandem.domain.matching.exceptions import NoActiveSearch
from tandem.infra.retry import StoreUnavailable, with_store_retry


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success():
	calls = {"count": 0}

	@with_store_retry("test.flaky", attempts=3, base_delay=0)
	async def flaky():
		calls["count"] += 1
		if calls["count"] < 3:
			raise RedisConnectionError("connection reset")
		return "ok"

	assert await flaky() == "ok"
	assert calls["count"] == 3


@pytest.mark.asyncio
async def test_exhausted_retries_surface_store_unavailable():
	@with_store_retry("test.down", attempts=2, base_delay=0)
	async def down():
		raise RedisConnectionError("refused")

	with pytest.raises(StoreUnavailable) as exc:
		await down()

	assert exc.value.operation == "test.down"
	assert exc.value.reason == "store_unavailable"


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried():
	calls = {"count": 0}

	@with_store_retry("test.domain", attempts=5, base_delay=0)
	async def cancel():
		calls["count"] += 1
		raise NoActiveSearch()

	with pytest.raises(NoActiveSearch):
		await cancel()
	assert calls["count"] == 1
