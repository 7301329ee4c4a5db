"""Conversation state machine: temporary -> pending promotion -> permanent, or terminated.

Every transition is a compare-and-set on the conversation record (see ``ChatStore``),
so user actions and the reaper can race on the same chat and exactly one wins. Side
effects (durable links, queue settlement, fan-out) run only after the winning write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from tandem.domain.conversations.exceptions import (
	AlreadySaved,
	ChatNotFound,
	InvalidTransition,
	NotAParticipant,
)
from tandem.domain.conversations.links import LinkRepository
from tandem.domain.conversations.messages import MessageLog
from tandem.domain.conversations.models import (
	EXPIRING_STATES,
	REASON_DELETED,
	REASON_EXPIRED,
	REASON_MESSAGES,
	REASON_OTHER_LEFT,
	REASON_USER_LEFT,
	REASON_YOU_LEFT_OTHER_SAVED,
	Conversation,
	SaveResult,
	TerminateResult,
)
from tandem.domain.conversations.schemas import ConversationView, PermanentChatSummary
from tandem.domain.conversations.store import ChatStore
from tandem.domain.directory import DirectoryRepository, get_directory
from tandem.domain.matching.exceptions import Ineligible
from tandem.domain.matching.store import QueueStore
from tandem.domain.realtime import events
from tandem.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _terminated_payload(chat_id: str, reason: str) -> dict:
	return {"chat_id": chat_id, "reason": reason, "message": REASON_MESSAGES[reason]}


def _saved_payload(conversation: Conversation) -> dict:
	return {
		"chat_id": conversation.chat_id,
		"saved_by": sorted(conversation.saved_by),
		"is_permanent": conversation.is_permanent,
	}


def _participant_of(conversation: Optional[Conversation], user_id: str) -> Conversation:
	if conversation is None:
		raise ChatNotFound()
	if not conversation.is_participant(user_id):
		raise NotAParticipant()
	return conversation


class LifecycleEngine:
	def __init__(
		self,
		*,
		store: Optional[ChatStore] = None,
		links: Optional[LinkRepository] = None,
		queue: Optional[QueueStore] = None,
		directory: Optional[DirectoryRepository] = None,
		messages: Optional[MessageLog] = None,
	) -> None:
		self.store = store or ChatStore()
		self.links = links or LinkRepository()
		self.queue = queue or QueueStore()
		self._directory = directory
		self.messages = messages or MessageLog()

	@property
	def directory(self) -> DirectoryRepository:
		return self._directory or get_directory()

	async def save(self, chat_id: str, user_id: str) -> SaveResult:
		def decide(current: Optional[Conversation]) -> Optional[Conversation]:
			conversation = _participant_of(current, user_id)
			if conversation.is_terminated:
				raise InvalidTransition("chat_terminated")
			if user_id in conversation.saved_by:
				raise AlreadySaved()
			return conversation.with_save(user_id)

		try:
			_, updated = await self.store.transition(chat_id, decide, operation="save")
		except AlreadySaved:
			# Replayed save after promotion: make sure the derived links exist.
			current = await self.store.get(chat_id)
			if current is not None and current.is_permanent:
				await self.links.upsert_pair(current)
			raise

		promoted = updated.is_permanent
		if not promoted:
			obs_metrics.chat_transition("saved")
			logger.info("chat saved chat=%s by=%s", chat_id, user_id)
			await self._announce_saved(updated)
			return SaveResult(conversation=updated, promoted=False)

		obs_metrics.chat_transition("promoted")
		logger.info("chat promoted chat=%s", chat_id)
		try:
			await self.links.upsert_pair(updated)
		finally:
			# The promotion is committed; a replayed save repairs missing links.
			await self.queue.settle(updated.participants, chat_id)
			await self._announce_saved(updated)
		return SaveResult(conversation=updated, promoted=True)

	async def _announce_saved(self, conversation: Conversation) -> None:
		payload = _saved_payload(conversation)
		for participant in conversation.participants:
			await events.emit_chat_saved(participant, payload)

	async def terminate(self, chat_id: str, user_id: str) -> TerminateResult:
		"""Leave a temporary chat. A participant who already saved cannot destroy it."""

		def decide(current: Optional[Conversation]) -> Optional[Conversation]:
			conversation = _participant_of(current, user_id)
			if conversation.is_terminated:
				raise InvalidTransition("chat_terminated")
			if conversation.is_permanent:
				raise InvalidTransition("chat_permanent")
			if user_id in conversation.saved_by:
				return None
			return conversation.terminated(reason=REASON_USER_LEFT, by=user_id)

		before, updated = await self.store.transition(chat_id, decide, operation="terminate")
		if updated is None:
			logger.info("terminate ignored, caller already saved chat=%s user=%s", chat_id, user_id)
			return TerminateResult(conversation=before, terminated=False)

		other_id = updated.counterpart(user_id)
		await self.queue.settle(updated.participants, chat_id)
		await self.messages.purge(chat_id)
		obs_metrics.chat_transition("terminated")
		if other_id in before.saved_by:
			await events.emit_chat_terminated(other_id, _terminated_payload(chat_id, REASON_OTHER_LEFT))
			await events.emit_chat_terminated(user_id, _terminated_payload(chat_id, REASON_YOU_LEFT_OTHER_SAVED))
		else:
			payload = _terminated_payload(chat_id, REASON_USER_LEFT)
			await events.emit_chat_terminated(other_id, payload)
			await events.emit_chat_terminated(user_id, payload)
		logger.info("chat terminated chat=%s by=%s other_saved=%s", chat_id, user_id, other_id in before.saved_by)
		return TerminateResult(conversation=updated, terminated=True)

	async def expire(self, chat_id: str, *, now: Optional[datetime] = None) -> bool:
		"""Force an overdue temporary chat to Terminated. Returns True if this call did it."""
		now = now or _now()

		def decide(current: Optional[Conversation]) -> Optional[Conversation]:
			if current is None or current.state not in EXPIRING_STATES:
				return None
			if current.expires_at is None or current.expires_at > now:
				return None
			return current.terminated(reason=REASON_EXPIRED, by=None)

		before, updated = await self.store.transition(chat_id, decide, operation="expire")
		if updated is None:
			if before is None:
				await self.store.drop_expiry(chat_id)
			return False
		await self.queue.settle(updated.participants, chat_id)
		await self.messages.purge(chat_id)
		obs_metrics.chat_transition("expired")
		payload = _terminated_payload(chat_id, REASON_EXPIRED)
		for participant in updated.participants:
			await events.emit_chat_terminated(participant, payload)
		return True

	async def delete(self, chat_id: str, user_id: str) -> Conversation:
		def check(current: Optional[Conversation]) -> None:
			conversation = _participant_of(current, user_id)
			if not conversation.is_permanent:
				raise InvalidTransition("chat_not_permanent")

		removed = await self.store.remove(chat_id, check)
		await self.links.delete_chat(chat_id)
		await self.messages.purge(chat_id)
		obs_metrics.chat_transition("deleted")
		await events.emit_chat_terminated(
			removed.counterpart(user_id),
			_terminated_payload(chat_id, REASON_DELETED),
		)
		logger.info("permanent chat deleted chat=%s by=%s", chat_id, user_id)
		return removed

	async def start_direct(
		self,
		user_id: str,
		other_id: str,
		*,
		group_id: Optional[str] = None,
		now: Optional[datetime] = None,
	) -> Tuple[Conversation, bool]:
		"""Open (or reuse) a permanent chat with a known contact, bypassing the save gate."""
		if user_id == other_id:
			raise Ineligible("self_chat")
		if other_id in await self.directory.blocked_pairs(user_id):
			raise Ineligible("blocked")
		if not await self.directory.may_start_direct(user_id, other_id, group_id=group_id):
			raise Ineligible("no_shared_group")
		candidate = Conversation.new_permanent(user_id, other_id, created_by=user_id, now=now or _now())
		conversation, created = await self.store.create_permanent(candidate)
		await self.links.upsert_pair(conversation)
		if created:
			obs_metrics.chat_transition("direct")
			await events.emit_chat_saved(other_id, _saved_payload(conversation))
		return conversation, created

	async def require_participant(self, chat_id: str, user_id: str, *, live: bool = False) -> Conversation:
		conversation = _participant_of(await self.store.get(chat_id), user_id)
		if live and conversation.is_terminated:
			raise InvalidTransition("chat_terminated")
		return conversation

	async def view(self, chat_id: str, user_id: str, *, now: Optional[datetime] = None) -> ConversationView:
		conversation = await self.require_participant(chat_id, user_id)
		profile = await self.directory.public_profile(conversation.counterpart(user_id))
		return ConversationView.build(conversation, viewer_id=user_id, counterpart=profile, now=now or _now())

	async def list_permanent(self, user_id: str, *, limit: int = 50, offset: int = 0) -> List[PermanentChatSummary]:
		links = await self.links.list_for_owner(user_id, limit=limit, offset=offset)
		items: List[PermanentChatSummary] = []
		for link in links:
			profile = await self.directory.public_profile(link.counterpart_id)
			items.append(PermanentChatSummary.from_link(link, profile))
		return items

	async def record_message_activity(
		self,
		chat_id: str,
		sender_id: str,
		preview: str,
		*,
		at: Optional[datetime] = None,
	) -> None:
		"""Refresh the denormalised preview; never raises."""
		at = at or _now()

		def decide(current: Optional[Conversation]) -> Optional[Conversation]:
			if current is None or current.is_terminated:
				return None
			return current.with_activity(at=at, preview=preview)

		try:
			_, updated = await self.store.transition(chat_id, decide, operation="activity")
			if updated is not None and updated.is_permanent:
				await self.links.touch(chat_id, at=at, preview=preview)
		except Exception:
			logger.warning("message activity sync failed chat=%s sender=%s", chat_id, sender_id, exc_info=True)


_engine: LifecycleEngine | None = None


def get_lifecycle() -> LifecycleEngine:
	global _engine
	if _engine is None:
		_engine = LifecycleEngine()
	return _engine


def set_lifecycle(engine: LifecycleEngine | None) -> None:
	global _engine
	_engine = engine


__all__ = ["LifecycleEngine", "get_lifecycle", "set_lifecycle"]
