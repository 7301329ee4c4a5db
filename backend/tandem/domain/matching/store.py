"""Redis-backed queue entries with optimistic compare-and-set transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from redis.exceptions import WatchError

from tandem.domain.matching.exceptions import NoActiveSearch
from tandem.domain.matching.models import (
	EXPIRY_KEY,
	QUEUE_KEY,
	QueueEntry,
	QueueStatus,
	entry_key,
)
from tandem.infra.redis import redis_client
from tandem.infra.retry import StoreUnavailable, with_store_retry
from tandem.obs import metrics as obs_metrics
from tandem.settings import settings

logger = logging.getLogger(__name__)

Decision = Optional[Callable[[object], None]]


class ClaimResult(str, Enum):
	CLAIMED = "claimed"
	SELF_TAKEN = "self_taken"
	CANDIDATE_TAKEN = "candidate_taken"
	CONFLICT = "conflict"


@dataclass(slots=True)
class ClaimOutcome:
	result: ClaimResult
	own: Optional[QueueEntry] = None
	candidate: Optional[QueueEntry] = None


def _stage_write(pipe, entry: QueueEntry) -> None:
	key = entry_key(entry.user_id)
	pipe.delete(key)
	pipe.hset(key, mapping=entry.to_mapping())
	if entry.status is QueueStatus.SEARCHING:
		pipe.zadd(QUEUE_KEY, {entry.user_id: entry.search_started_at.timestamp()})
		pipe.zadd(EXPIRY_KEY, {entry.user_id: entry.expires_at.timestamp()})
	elif entry.status is QueueStatus.MATCHED:
		pipe.zrem(QUEUE_KEY, entry.user_id)
		pipe.zadd(EXPIRY_KEY, {entry.user_id: entry.expires_at.timestamp()})
	else:
		pipe.zrem(QUEUE_KEY, entry.user_id)
		pipe.zrem(EXPIRY_KEY, entry.user_id)
		pipe.expire(key, settings.queue_archive_ttl_seconds)


def _stage_delete(pipe, user_id: str) -> None:
	pipe.delete(entry_key(user_id))
	pipe.zrem(QUEUE_KEY, user_id)
	pipe.zrem(EXPIRY_KEY, user_id)


class QueueStore:
	"""All queue mutations run as WATCH/MULTI/EXEC transactions on the entry hash."""

	def __init__(self, client=None) -> None:
		self._client = client

	@property
	def _redis(self):
		return self._client if self._client is not None else redis_client

	async def _compare_and_set(
		self,
		user_id: str,
		decide: Callable[[Optional[QueueEntry]], Decision],
		*,
		operation: str,
	) -> Optional[QueueEntry]:
		"""Read the entry, let ``decide`` stage a write, commit only if nobody raced us.

		``decide`` returns ``None`` to leave the entry untouched. Returns the entry as it
		was read on the attempt that committed (or declined).
		"""
		key = entry_key(user_id)
		for _ in range(max(1, settings.claim_max_attempts)):
			async with self._redis.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					current = QueueEntry.from_mapping(await pipe.hgetall(key))
					stage = decide(current)
					if stage is None:
						return current
					pipe.multi()
					stage(pipe)
					await pipe.execute()
					return current
				except WatchError:
					obs_metrics.claim_conflict(operation)
					logger.debug("queue cas conflict op=%s user=%s", operation, user_id)
		raise StoreUnavailable(f"match.{operation}")

	@with_store_retry("match.get_entry")
	async def get(self, user_id: str) -> Optional[QueueEntry]:
		return QueueEntry.from_mapping(await self._redis.hgetall(entry_key(user_id)))

	@with_store_retry("match.enqueue")
	async def enqueue(self, entry: QueueEntry, *, now: datetime) -> bool:
		"""Write a Searching entry unless the user already holds a live one."""
		written = False

		def decide(current: Optional[QueueEntry]) -> Decision:
			nonlocal written
			if current is not None and current.is_live(now):
				written = False
				return None
			written = True
			return lambda pipe: _stage_write(pipe, entry)

		await self._compare_and_set(entry.user_id, decide, operation="enqueue")
		return written

	async def iter_searching(self, *, page_size: int = 50) -> AsyncIterator[QueueEntry]:
		"""Yield Searching entries oldest first.

		Pages by score from the last yielded entry, so members claimed or cancelled
		mid-scan never shift later candidates past the cursor.
		"""
		floor: object = "-inf"
		yielded: set[str] = set()
		limit = page_size
		while True:
			members = await self._queue_slice(floor, limit)
			fresh = [(user_id, score) for user_id, score in members if user_id not in yielded]
			if not fresh:
				if len(members) < limit:
					return
				# A whole page shares the cursor score; widen until we get past it.
				limit *= 2
				continue
			limit = page_size
			floor = fresh[-1][1]
			user_ids = [user_id for user_id, _ in fresh]
			yielded.update(user_ids)
			for entry in await self._load_searching(user_ids):
				yield entry

	@with_store_retry("match.scan")
	async def _queue_slice(self, floor: object, limit: int) -> list[tuple[str, float]]:
		return list(await self._redis.zrangebyscore(QUEUE_KEY, floor, "+inf", start=0, num=limit, withscores=True))

	@with_store_retry("match.scan")
	async def _load_searching(self, user_ids: list[str]) -> list[QueueEntry]:
		async with self._redis.pipeline(transaction=False) as pipe:
			for user_id in user_ids:
				pipe.hgetall(entry_key(user_id))
			rows = await pipe.execute()
		entries: list[QueueEntry] = []
		for row in rows:
			entry = QueueEntry.from_mapping(row)
			if entry is not None and entry.status is QueueStatus.SEARCHING:
				entries.append(entry)
		return entries

	@with_store_retry("match.claim")
	async def claim_pair(
		self,
		user_id: str,
		candidate_id: str,
		*,
		now: datetime,
		chat_id: str,
		chat_expires_at: datetime,
		stage_conversation: Callable[[object], None],
	) -> ClaimOutcome:
		"""Flip both entries to Matched and stage the conversation in one transaction."""
		own_key = entry_key(user_id)
		candidate_key = entry_key(candidate_id)
		async with self._redis.pipeline(transaction=True) as pipe:
			try:
				await pipe.watch(own_key, candidate_key)
				own = QueueEntry.from_mapping(await pipe.hgetall(own_key))
				candidate = QueueEntry.from_mapping(await pipe.hgetall(candidate_key))
				if own is None or not own.is_searching(now):
					return ClaimOutcome(ClaimResult.SELF_TAKEN, own=own, candidate=candidate)
				if (
					candidate is None
					or not candidate.is_searching(now)
					or candidate.excludes(user_id)
					or own.excludes(candidate_id)
				):
					return ClaimOutcome(ClaimResult.CANDIDATE_TAKEN, own=own, candidate=candidate)
				own_matched = own.matched(chat_id, chat_expires_at)
				candidate_matched = candidate.matched(chat_id, chat_expires_at)
				pipe.multi()
				_stage_write(pipe, own_matched)
				_stage_write(pipe, candidate_matched)
				stage_conversation(pipe)
				await pipe.execute()
			except WatchError:
				obs_metrics.claim_conflict("pair")
				return ClaimOutcome(ClaimResult.CONFLICT)
		return ClaimOutcome(ClaimResult.CLAIMED, own=own_matched, candidate=candidate_matched)

	@with_store_retry("match.cancel")
	async def cancel(self, user_id: str, *, now: datetime) -> QueueEntry:
		def decide(current: Optional[QueueEntry]) -> Decision:
			if current is None or current.status is not QueueStatus.SEARCHING or not current.is_live(now):
				raise NoActiveSearch()
			cancelled = current.with_status(QueueStatus.CANCELLED)
			return lambda pipe: _stage_write(pipe, cancelled)

		current = await self._compare_and_set(user_id, decide, operation="cancel")
		return current.with_status(QueueStatus.CANCELLED)

	@with_store_retry("match.expire")
	async def expire_if_overdue(self, user_id: str, *, now: datetime) -> Optional[QueueStatus]:
		"""Expire an overdue Searching entry or drop an overdue Matched one.

		Returns the status that was acted on, or ``None`` when the entry was not due.
		"""
		acted: Optional[QueueStatus] = None

		def decide(current: Optional[QueueEntry]) -> Decision:
			nonlocal acted
			acted = None
			if current is None:
				return lambda pipe: pipe.zrem(EXPIRY_KEY, user_id)
			if current.is_terminal or current.expires_at > now:
				return None
			acted = current.status
			if current.status is QueueStatus.SEARCHING:
				expired = current.with_status(QueueStatus.EXPIRED)
				return lambda pipe: _stage_write(pipe, expired)
			return lambda pipe: _stage_delete(pipe, user_id)

		await self._compare_and_set(user_id, decide, operation="expire")
		return acted

	@with_store_retry("match.settle")
	async def settle(self, user_ids: tuple[str, ...], chat_id: str) -> None:
		"""Remove entries still paired to a conversation that left the temporary phase."""

		def decide(current: Optional[QueueEntry]) -> Decision:
			if current is None or current.paired_chat_id != chat_id:
				return None
			return lambda pipe: _stage_delete(pipe, current.user_id)

		for user_id in user_ids:
			await self._compare_and_set(user_id, decide, operation="settle")

	@with_store_retry("match.consume")
	async def consume_terminal(self, user_id: str) -> None:
		"""Delete an Expired/Cancelled entry once its owner has seen it."""

		def decide(current: Optional[QueueEntry]) -> Decision:
			if current is None or not current.is_terminal:
				return None
			return lambda pipe: _stage_delete(pipe, user_id)

		await self._compare_and_set(user_id, decide, operation="consume")

	@with_store_retry("match.due")
	async def due_for_expiry(self, *, now: datetime, limit: int) -> list[str]:
		return list(await self._redis.zrangebyscore(EXPIRY_KEY, "-inf", now.timestamp(), start=0, num=limit))
