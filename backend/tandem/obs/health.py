"""Probe payloads for the ops router.

Readiness fails only when Redis is down: queue entries and conversations live there.
Postgres backs the durable link index and directory lookups, which fall back to
process memory, so losing it (or a stalled reaper) degrades the service without
taking it out of rotation.
"""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, Tuple

from tandem.domain.conversations.reaper import JOB_NAME as REAPER_JOB
from tandem.domain.realtime import events
from tandem.infra import postgres
from tandem.infra.redis import redis_client
from tandem.obs import metrics
from tandem.settings import settings

logger = logging.getLogger(__name__)

Check = Dict[str, Any]


async def check_redis(timeout: float = 0.2) -> Check:
	try:
		latency = await asyncio.wait_for(redis_client.ping_latency(), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_redis(False)
		logger.warning("redis probe failed", exc_info=True)
		return {"ok": False, "error": type(exc).__name__}
	metrics.mark_redis(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


async def check_postgres(timeout: float = 0.3) -> Check:
	pool = await postgres.get_pool_or_none()
	if pool is None:
		metrics.mark_postgres(False)
		return {"ok": False, "fallback": "memory"}
	start = perf_counter()
	try:
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.fetchval("SELECT 1"), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_postgres(False)
		logger.warning("postgres probe failed", exc_info=True)
		return {"ok": False, "error": type(exc).__name__}
	latency = perf_counter() - start
	metrics.mark_postgres(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


def check_reaper() -> Check:
	"""A sweep is overdue after three missed intervals."""
	if not settings.reaper_enabled:
		return {"ok": True, "enabled": False}
	age = metrics.last_success_age(REAPER_JOB)
	if age is None:
		return {"ok": True, "enabled": True, "last_success_s": None}
	return {
		"ok": age <= settings.reaper_interval_seconds * 3,
		"enabled": True,
		"last_success_s": round(age, 1),
	}


def check_fanout() -> Check:
	return {"ok": events.get_namespace() is not None, "namespace": events.NAMESPACE}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	checks = {
		"redis": await check_redis(),
		"postgres": await check_postgres(),
		"reaper": check_reaper(),
		"fanout": check_fanout(),
	}
	redis_ok = bool(checks["redis"]["ok"])
	healthy = all(bool(check["ok"]) for check in checks.values())
	return (200 if redis_ok else 503), {"status": "ok" if healthy else "degraded", "checks": checks}


async def startup() -> Tuple[int, Dict[str, Any]]:
	if not check_fanout()["ok"]:
		return 503, {"status": "starting", "error": "realtime_namespace_missing"}
	if settings.obs_tracing_enabled and not settings.otel_exporter_otlp_endpoint:
		return 503, {"status": "error", "error": "missing_otlp_endpoint"}
	return 200, {"status": "ok"}
