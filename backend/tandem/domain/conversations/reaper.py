"""Periodic sweep that force-expires overdue searches and temporary chats."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from tandem.domain.conversations.lifecycle import LifecycleEngine, get_lifecycle
from tandem.domain.matching.models import QueueStatus
from tandem.domain.matching.store import QueueStore
from tandem.domain.realtime import events
from tandem.obs import metrics as obs_metrics
from tandem.obs import tracing
from tandem.settings import settings

logger = logging.getLogger(__name__)

JOB_NAME = "reaper"

_TIMEOUT_MESSAGE = "No match found. Please try again."


class Reaper:
	def __init__(self, *, queue: Optional[QueueStore] = None, lifecycle: Optional[LifecycleEngine] = None) -> None:
		self.queue = queue or QueueStore()
		self._lifecycle = lifecycle

	@property
	def lifecycle(self) -> LifecycleEngine:
		return self._lifecycle or get_lifecycle()

	async def sweep(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
		"""One pass over both expiry indexes. Safe to run concurrently with itself."""
		now = now or datetime.now(timezone.utc)
		with tracing.span("reaper.sweep"):
			queue_expired, matches_dropped = await self._sweep_queue(now)
			chats_expired = await self._sweep_chats(now)
		summary = {
			"queue_expired": queue_expired,
			"matches_dropped": matches_dropped,
			"chats_expired": chats_expired,
		}
		obs_metrics.reaped("queue_entry", queue_expired)
		obs_metrics.reaped("chat", chats_expired)
		if queue_expired or chats_expired or matches_dropped:
			logger.info("reaper sweep", extra=summary)
		return summary

	async def _sweep_queue(self, now: datetime) -> tuple[int, int]:
		expired = dropped = 0
		for user_id in await self.queue.due_for_expiry(now=now, limit=settings.reaper_batch_size):
			try:
				acted = await self.queue.expire_if_overdue(user_id, now=now)
			except Exception:
				logger.exception("reaper failed to expire queue entry user=%s", user_id)
				continue
			if acted is QueueStatus.SEARCHING:
				expired += 1
				await events.emit_search_timeout(user_id, {"reason": "timeout", "message": _TIMEOUT_MESSAGE})
			elif acted is QueueStatus.MATCHED:
				dropped += 1
		return expired, dropped

	async def _sweep_chats(self, now: datetime) -> int:
		expired = 0
		for chat_id in await self.lifecycle.store.due_for_expiry(now=now, limit=settings.reaper_batch_size):
			try:
				if await self.lifecycle.expire(chat_id, now=now):
					expired += 1
			except Exception:
				logger.exception("reaper failed to expire chat=%s", chat_id)
		return expired


async def run_reaper(reaper: Optional[Reaper] = None) -> Optional[Dict[str, int]]:
	"""Scheduler entry point; failures are logged and retried on the next tick."""
	reaper = reaper or Reaper()
	start = time.perf_counter()
	try:
		summary = await reaper.sweep()
	except Exception:
		obs_metrics.record_job_run(JOB_NAME, result="error", duration_seconds=time.perf_counter() - start)
		logger.exception("reaper sweep failed")
		return None
	obs_metrics.record_job_run(JOB_NAME, result="ok", duration_seconds=time.perf_counter() - start)
	return summary
