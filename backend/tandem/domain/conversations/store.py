"""Redis-backed conversation records (the authoritative chat state)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from redis.exceptions import WatchError

from tandem.domain.conversations.exceptions import InvalidTransition
from tandem.domain.conversations.models import (
	EXPIRING_STATES,
	EXPIRY_KEY,
	ChatState,
	Conversation,
	conversation_key,
	pair_key,
)
from tandem.infra.redis import redis_client
from tandem.infra.retry import StoreUnavailable, with_store_retry
from tandem.obs import metrics as obs_metrics
from tandem.settings import settings

logger = logging.getLogger(__name__)


def stage_conversation(pipe, conversation: Conversation) -> None:
	"""Queue the full record plus its index updates on a MULTI pipeline."""
	key = conversation_key(conversation.chat_id)
	pipe.hset(key, mapping=conversation.to_mapping())
	if conversation.state in EXPIRING_STATES and conversation.expires_at is not None:
		pipe.zadd(EXPIRY_KEY, {conversation.chat_id: conversation.expires_at.timestamp()})
	else:
		pipe.zrem(EXPIRY_KEY, conversation.chat_id)
	if conversation.state is ChatState.PERMANENT:
		pipe.set(pair_key(*conversation.participants), conversation.chat_id)
	elif conversation.state is ChatState.TERMINATED:
		pipe.expire(key, settings.terminated_chat_ttl_seconds)


async def _guard_pair_index(pipe, conversation: Conversation) -> None:
	"""WATCH the pair pointer and refuse to shadow a different live permanent chat."""
	index_key = pair_key(*conversation.participants)
	await pipe.watch(index_key)
	existing_id = await pipe.get(index_key)
	if not existing_id or existing_id == conversation.chat_id:
		return
	existing = Conversation.from_mapping(await pipe.hgetall(conversation_key(existing_id)))
	if existing is not None and existing.is_permanent:
		raise InvalidTransition("pair_already_permanent")


class ChatStore:
	def __init__(self, client=None) -> None:
		self._client = client

	@property
	def _redis(self):
		return self._client if self._client is not None else redis_client

	@with_store_retry("chat.get")
	async def get(self, chat_id: str) -> Optional[Conversation]:
		return Conversation.from_mapping(await self._redis.hgetall(conversation_key(chat_id)))

	@with_store_retry("chat.pair_lookup")
	async def permanent_chat_id(self, user_one: str, user_two: str) -> Optional[str]:
		return await self._redis.get(pair_key(user_one, user_two))

	@with_store_retry("chat.create_permanent")
	async def create_permanent(self, conversation: Conversation) -> Tuple[Conversation, bool]:
		"""Create a permanent conversation unless the pair already has one.

		Returns ``(conversation, created)``; when the pair already holds a live
		permanent conversation that one is returned instead.
		"""
		index_key = pair_key(*conversation.participants)
		for _ in range(max(1, settings.claim_max_attempts)):
			async with self._redis.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(index_key)
					existing_id = await pipe.get(index_key)
					if existing_id:
						existing = Conversation.from_mapping(await pipe.hgetall(conversation_key(existing_id)))
						if existing is not None and existing.is_permanent:
							return existing, False
					pipe.multi()
					stage_conversation(pipe, conversation)
					await pipe.execute()
					return conversation, True
				except WatchError:
					obs_metrics.claim_conflict("direct")
		raise StoreUnavailable("chat.create_permanent")

	@with_store_retry("chat.transition")
	async def transition(
		self,
		chat_id: str,
		decide: Callable[[Optional[Conversation]], Optional[Conversation]],
		*,
		operation: str = "transition",
	) -> Tuple[Optional[Conversation], Optional[Conversation]]:
		"""Apply ``decide`` to the current record and commit it if no one raced us.

		``decide`` sees the freshly read record and returns the next version, or
		``None`` to leave it unchanged; it may raise a domain error. Returns
		``(before, after)`` where ``after`` is ``None`` when nothing was written.

		A promoting write also WATCHes the pair pointer and raises
		``InvalidTransition`` when another permanent chat already holds it.
		"""
		key = conversation_key(chat_id)
		for _ in range(max(1, settings.claim_max_attempts)):
			async with self._redis.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					current = Conversation.from_mapping(await pipe.hgetall(key))
					updated = decide(current)
					if updated is None:
						return current, None
					if updated.is_permanent and not (current is not None and current.is_permanent):
						await _guard_pair_index(pipe, updated)
					pipe.multi()
					stage_conversation(pipe, updated)
					await pipe.execute()
					return current, updated
				except WatchError:
					obs_metrics.claim_conflict(operation)
					logger.debug("chat cas conflict op=%s chat=%s", operation, chat_id)
		raise StoreUnavailable(f"chat.{operation}")

	@with_store_retry("chat.remove")
	async def remove(
		self,
		chat_id: str,
		check: Callable[[Optional[Conversation]], None],
	) -> Conversation:
		"""Delete a conversation after ``check`` accepted the current record."""
		key = conversation_key(chat_id)
		for _ in range(max(1, settings.claim_max_attempts)):
			async with self._redis.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					current = Conversation.from_mapping(await pipe.hgetall(key))
					check(current)
					pipe.multi()
					pipe.delete(key)
					pipe.zrem(EXPIRY_KEY, chat_id)
					pipe.delete(pair_key(*current.participants))
					await pipe.execute()
					return current
				except WatchError:
					obs_metrics.claim_conflict("remove")
		raise StoreUnavailable("chat.remove")

	@with_store_retry("chat.due")
	async def due_for_expiry(self, *, now: datetime, limit: int) -> list[str]:
		return list(await self._redis.zrangebyscore(EXPIRY_KEY, "-inf", now.timestamp(), start=0, num=limit))

	@with_store_retry("chat.unindex")
	async def drop_expiry(self, chat_id: str) -> None:
		await self._redis.zrem(EXPIRY_KEY, chat_id)
