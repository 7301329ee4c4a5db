"""APScheduler wrapper for periodic background jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


class JobScheduler:
	"""Minimal wrapper around AsyncIOScheduler for interval jobs."""

	def __init__(self) -> None:
		self._scheduler = AsyncIOScheduler(timezone="UTC")
		self._started = False

	@property
	def running(self) -> bool:
		return self._started

	def start(self) -> None:
		if not self._started:
			self._scheduler.start()
			self._started = True

	def shutdown(self) -> None:
		if self._started:
			self._scheduler.shutdown(wait=False)
			self._started = False

	def schedule_every(
		self,
		job_id: str,
		func: Callable[[], Awaitable[object]],
		*,
		seconds: int,
		run_immediately: bool = True,
	) -> None:
		"""Run ``func`` every ``seconds``; overlapping runs of one job are skipped."""
		trigger = IntervalTrigger(seconds=max(1, int(seconds)))
		kwargs = {}
		if run_immediately:
			kwargs["next_run_time"] = datetime.now(timezone.utc)
		self._scheduler.add_job(
			func,
			trigger=trigger,
			id=job_id,
			replace_existing=True,
			max_instances=1,
			coalesce=True,
			**kwargs,
		)


__all__ = ["JobScheduler"]
