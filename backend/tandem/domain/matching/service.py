"""Matchmaking: admit a searcher, pair FIFO with an atomic claim, answer status reads."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from tandem.domain.conversations.models import Conversation
from tandem.domain.conversations.store import ChatStore, stage_conversation
from tandem.domain.directory import DirectoryRepository, get_directory
from tandem.domain.matching.exceptions import AlreadySearching, Ineligible
from tandem.domain.matching.models import (
	QueueEntry,
	QueueStatus,
	SearchOutcome,
	SearchState,
)
from tandem.domain.matching.store import ClaimResult, QueueStore
from tandem.domain.realtime import events
from tandem.obs import metrics as obs_metrics
from tandem.obs import tracing
from tandem.settings import settings

logger = logging.getLogger(__name__)


def _now() -> datetime:
	return datetime.now(timezone.utc)


class MatchService:
	def __init__(
		self,
		*,
		queue: Optional[QueueStore] = None,
		chats: Optional[ChatStore] = None,
		directory: Optional[DirectoryRepository] = None,
	) -> None:
		self.queue = queue or QueueStore()
		self.chats = chats or ChatStore()
		self._directory = directory

	@property
	def directory(self) -> DirectoryRepository:
		return self._directory or get_directory()

	async def request_search(self, user_id: str, *, now: Optional[datetime] = None) -> SearchOutcome:
		with tracing.span("match.request_search", user_id=user_id):
			return await self._request_search(user_id, now=now or _now())

	async def _request_search(self, user_id: str, *, now: datetime) -> SearchOutcome:
		if not await self.directory.is_eligible_to_match(user_id):
			obs_metrics.match_request("ineligible")
			raise Ineligible("banned")
		existing = await self.queue.get(user_id)
		if existing is not None and existing.is_live(now):
			obs_metrics.match_request("already_searching")
			raise AlreadySearching()

		blocked = await self.directory.blocked_pairs(user_id)
		entry = QueueEntry.start(user_id, blocked=blocked, now=now, ttl_seconds=settings.match_queue_ttl_seconds)
		if not await self.queue.enqueue(entry, now=now):
			obs_metrics.match_request("already_searching")
			raise AlreadySearching()

		outcome = await self._pair(entry, now=now)
		if outcome is not None:
			return outcome
		# A concurrent searcher may have claimed us after our scan finished.
		own = await self.queue.get(user_id)
		if own is not None and own.status is QueueStatus.MATCHED:
			return await self._resolve_own(user_id, own)
		obs_metrics.match_request("searching")
		logger.info("search queued user=%s", user_id)
		return SearchOutcome(status="searching", expires_at=entry.expires_at)

	async def _pair(self, entry: QueueEntry, *, now: datetime) -> Optional[SearchOutcome]:
		user_id = entry.user_id
		for _ in range(max(1, settings.claim_max_attempts)):
			restart = False
			async for candidate in self.queue.iter_searching():
				if candidate.user_id == user_id or candidate.user_id in entry.blocked_snapshot:
					continue
				if candidate.excludes(user_id) or not candidate.is_searching(now):
					continue
				if await self.chats.permanent_chat_id(user_id, candidate.user_id):
					continue
				conversation = Conversation.new_temporary(
					candidate.user_id,
					user_id,
					created_by=user_id,
					now=now,
					ttl_seconds=settings.temporary_chat_ttl_seconds,
				)
				claim = await self.queue.claim_pair(
					user_id,
					candidate.user_id,
					now=now,
					chat_id=conversation.chat_id,
					chat_expires_at=conversation.expires_at,
					stage_conversation=lambda pipe, conv=conversation: stage_conversation(pipe, conv),
				)
				if claim.result is ClaimResult.CLAIMED:
					return await self._announce(conversation, user_id, candidate, now=now)
				if claim.result is ClaimResult.SELF_TAKEN:
					return await self._resolve_own(user_id, claim.own)
				if claim.result is ClaimResult.CANDIDATE_TAKEN:
					obs_metrics.claim_conflict("candidate")
					logger.info("candidate taken by concurrent searcher user=%s candidate=%s", user_id, candidate.user_id)
					continue
				restart = True
				break
			if not restart:
				return None
		return None

	async def _announce(
		self,
		conversation: Conversation,
		user_id: str,
		candidate: QueueEntry,
		*,
		now: datetime,
	) -> SearchOutcome:
		obs_metrics.match_request("matched")
		obs_metrics.observe_queue_wait(max(0.0, (now - candidate.search_started_at).total_seconds()))
		mine = await self.directory.public_profile(user_id)
		theirs = await self.directory.public_profile(candidate.user_id)
		await events.emit_match_found(
			candidate.user_id,
			{
				"chat_id": conversation.chat_id,
				"counterpart": mine.to_payload(),
				"expires_at": conversation.expires_at.isoformat(),
			},
		)
		logger.info("match created chat=%s", conversation.chat_id)
		return SearchOutcome(
			status="matched",
			chat_id=conversation.chat_id,
			counterpart=theirs.to_payload(),
			expires_at=conversation.expires_at,
		)

	async def _resolve_own(self, user_id: str, own: Optional[QueueEntry]) -> SearchOutcome:
		"""Our entry changed under us: report the pairing someone else made, or why it ended."""
		if own is None:
			return SearchOutcome(status=QueueStatus.CANCELLED.value)
		if own.status is not QueueStatus.MATCHED or not own.paired_chat_id:
			return SearchOutcome(status=own.status.value, expires_at=own.expires_at)
		conversation = await self.chats.get(own.paired_chat_id)
		if conversation is None:
			return SearchOutcome(status=QueueStatus.MATCHED.value, chat_id=own.paired_chat_id)
		profile = await self.directory.public_profile(conversation.counterpart(user_id))
		obs_metrics.match_request("matched")
		return SearchOutcome(
			status="matched",
			chat_id=conversation.chat_id,
			counterpart=profile.to_payload(),
			expires_at=conversation.expires_at,
		)

	async def cancel_search(self, user_id: str, *, now: Optional[datetime] = None) -> QueueEntry:
		cancelled = await self.queue.cancel(user_id, now=now or _now())
		obs_metrics.match_request("cancelled")
		logger.info("search cancelled user=%s", user_id)
		return cancelled

	async def queue_status(self, user_id: str, *, now: Optional[datetime] = None) -> SearchState:
		now = now or _now()
		entry = await self.queue.get(user_id)
		if entry is None:
			return SearchState()
		if entry.is_terminal:
			await self.queue.consume_terminal(user_id)
			return SearchState(timed_out=entry.status is QueueStatus.EXPIRED)
		if entry.expires_at <= now:
			return SearchState(timed_out=entry.status is QueueStatus.SEARCHING)
		if entry.status is QueueStatus.MATCHED:
			return SearchState(matched=True, chat_id=entry.paired_chat_id, expires_at=entry.expires_at)
		return SearchState(searching=True, expires_at=entry.expires_at)


_service: MatchService | None = None


def get_match_service() -> MatchService:
	global _service
	if _service is None:
		_service = MatchService()
	return _service


def set_match_service(service: MatchService | None) -> None:
	global _service
	_service = service
