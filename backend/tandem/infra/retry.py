"""Bounded retry with exponential backoff for storage I/O."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, TypeVar

import asyncpg
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tandem.obs import metrics as obs_metrics
from tandem.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
	RedisConnectionError,
	RedisTimeoutError,
	asyncpg.exceptions.ConnectionDoesNotExistError,
	asyncpg.exceptions.CannotConnectNowError,
	asyncpg.exceptions.TooManyConnectionsError,
	ConnectionError,
	asyncio.TimeoutError,
	OSError,
)


class StoreUnavailable(Exception):
	"""Raised when storage stays unreachable after all retries."""

	reason = "store_unavailable"

	def __init__(self, operation: str = "unknown") -> None:
		super().__init__(f"{self.reason}:{operation}")
		self.operation = operation


def with_store_retry(
	operation: str | None = None,
	*,
	attempts: int | None = None,
	base_delay: float | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
	"""Retry transient storage failures, then surface ``StoreUnavailable``.

	Anything that is not a transport-level failure propagates untouched, so domain
	errors raised inside the wrapped coroutine are never retried.
	"""

	def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
		name = operation or func.__name__

		@functools.wraps(func)
		async def wrapper(*args, **kwargs) -> T:
			max_attempts = max(1, attempts if attempts is not None else settings.store_retry_attempts)
			delay_base = base_delay if base_delay is not None else settings.store_retry_base_delay_seconds
			for attempt in range(max_attempts):
				try:
					return await func(*args, **kwargs)
				except TRANSIENT_ERRORS as exc:
					if attempt + 1 >= max_attempts:
						logger.error(
							"store operation %s failed after %s attempts: %s",
							name,
							max_attempts,
							exc,
						)
						obs_metrics.store_retry(name, "exhausted")
						raise StoreUnavailable(name) from exc
					delay = delay_base * (2**attempt)
					logger.warning(
						"store operation %s failed (attempt %s/%s), retrying in %.3fs",
						name,
						attempt + 1,
						max_attempts,
						delay,
					)
					obs_metrics.store_retry(name, "retry")
					await asyncio.sleep(delay)
			raise StoreUnavailable(name)

		return wrapper

	return decorator


__all__ = ["StoreUnavailable", "TRANSIENT_ERRORS", "with_store_retry"]
