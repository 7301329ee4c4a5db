"""asyncpg pool lifecycle plus the optional lookup repositories fall back on."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import asyncpg

from tandem.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None
_unavailable = False


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			command_timeout=settings.postgres_command_timeout_seconds,
		)
	return _pool


async def get_pool_or_none() -> Optional[asyncpg.pool.Pool]:
	"""Return the pool, or ``None`` once Postgres has proven unreachable."""
	global _unavailable
	if _pool is not None:
		return _pool
	if _unavailable:
		return None
	try:
		return await init_pool()
	except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
		_unavailable = True
		logger.warning("postgres unavailable, repositories use in-memory stores: %s", exc)
		return None


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
