"""Durable owner -> counterpart pointers for permanent conversations."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from tandem.domain.conversations.models import ChatLink, Conversation
from tandem.infra.postgres import get_pool_or_none
from tandem.infra.retry import with_store_retry

logger = logging.getLogger(__name__)

_UPSERT_SQL = """
INSERT INTO chat_links (owner_id, counterpart_id, chat_id, created_at, last_message_at, last_message_preview)
VALUES ($1, $2, $3, NOW(), $4, $5)
ON CONFLICT (owner_id, counterpart_id) DO UPDATE
SET chat_id = EXCLUDED.chat_id,
	last_message_at = COALESCE(EXCLUDED.last_message_at, chat_links.last_message_at),
	last_message_preview = COALESCE(EXCLUDED.last_message_preview, chat_links.last_message_preview)
"""

_LIST_SQL = """
SELECT owner_id, counterpart_id, chat_id, created_at, last_message_at, last_message_preview
FROM chat_links
WHERE owner_id = $1
ORDER BY last_message_at DESC NULLS LAST, created_at DESC
LIMIT $2 OFFSET $3
"""


def _link_from_record(record) -> ChatLink:
	return ChatLink(
		owner_id=str(record["owner_id"]),
		counterpart_id=str(record["counterpart_id"]),
		chat_id=str(record["chat_id"]),
		created_at=record["created_at"],
		last_message_at=record["last_message_at"],
		last_message_preview=record["last_message_preview"],
	)


class _InMemoryLinks:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._rows: Dict[Tuple[str, str], ChatLink] = {}

	def reset(self) -> None:
		self._rows.clear()

	async def upsert(self, link: ChatLink) -> None:
		async with self._lock:
			existing = self._rows.get((link.owner_id, link.counterpart_id))
			if existing is not None:
				existing.chat_id = link.chat_id
				existing.last_message_at = link.last_message_at or existing.last_message_at
				existing.last_message_preview = link.last_message_preview or existing.last_message_preview
				return
			self._rows[(link.owner_id, link.counterpart_id)] = ChatLink(
				owner_id=link.owner_id,
				counterpart_id=link.counterpart_id,
				chat_id=link.chat_id,
				created_at=link.created_at or datetime.now(timezone.utc),
				last_message_at=link.last_message_at,
				last_message_preview=link.last_message_preview,
			)

	async def delete_chat(self, chat_id: str) -> None:
		async with self._lock:
			for key in [key for key, row in self._rows.items() if row.chat_id == chat_id]:
				del self._rows[key]

	async def touch(self, chat_id: str, at: datetime, preview: str) -> None:
		async with self._lock:
			for row in self._rows.values():
				if row.chat_id == chat_id:
					row.last_message_at = at
					row.last_message_preview = preview

	async def get(self, owner_id: str, counterpart_id: str) -> Optional[ChatLink]:
		async with self._lock:
			return self._rows.get((owner_id, counterpart_id))

	async def list_for_owner(self, owner_id: str, *, limit: int, offset: int) -> List[ChatLink]:
		async with self._lock:
			rows = [row for row in self._rows.values() if row.owner_id == owner_id]
		epoch = datetime.min.replace(tzinfo=timezone.utc)
		rows.sort(
			key=lambda row: (row.last_message_at is not None, row.last_message_at or epoch, row.created_at or epoch),
			reverse=True,
		)
		return rows[offset : offset + limit]


_MEMORY_LINKS = _InMemoryLinks()


def memory_links() -> _InMemoryLinks:
	return _MEMORY_LINKS


class LinkRepository:
	"""Upserts and lists ``chat_links`` rows; falls back to process memory without Postgres."""

	@staticmethod
	def _pair_links(conversation: Conversation) -> tuple[ChatLink, ChatLink]:
		first, second = conversation.participants
		return (
			ChatLink(
				owner_id=first,
				counterpart_id=second,
				chat_id=conversation.chat_id,
				last_message_at=conversation.last_message_at,
				last_message_preview=conversation.last_message_preview,
			),
			ChatLink(
				owner_id=second,
				counterpart_id=first,
				chat_id=conversation.chat_id,
				last_message_at=conversation.last_message_at,
				last_message_preview=conversation.last_message_preview,
			),
		)

	@with_store_retry("links.upsert")
	async def upsert_pair(self, conversation: Conversation) -> None:
		"""Idempotently write both participants' links for a permanent conversation."""
		links = self._pair_links(conversation)
		pool = await get_pool_or_none()
		if pool is None:
			for link in links:
				await _MEMORY_LINKS.upsert(link)
			return
		async with pool.acquire() as conn:
			async with conn.transaction():
				for link in links:
					await conn.execute(
						_UPSERT_SQL,
						link.owner_id,
						link.counterpart_id,
						link.chat_id,
						link.last_message_at,
						link.last_message_preview,
					)

	@with_store_retry("links.delete")
	async def delete_chat(self, chat_id: str) -> None:
		pool = await get_pool_or_none()
		if pool is None:
			await _MEMORY_LINKS.delete_chat(chat_id)
			return
		async with pool.acquire() as conn:
			await conn.execute("DELETE FROM chat_links WHERE chat_id = $1", chat_id)

	@with_store_retry("links.touch")
	async def touch(self, chat_id: str, *, at: datetime, preview: str) -> None:
		pool = await get_pool_or_none()
		if pool is None:
			await _MEMORY_LINKS.touch(chat_id, at, preview)
			return
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE chat_links SET last_message_at = $2, last_message_preview = $3 WHERE chat_id = $1",
				chat_id,
				at,
				preview,
			)

	@with_store_retry("links.get")
	async def get(self, owner_id: str, counterpart_id: str) -> Optional[ChatLink]:
		pool = await get_pool_or_none()
		if pool is None:
			return await _MEMORY_LINKS.get(owner_id, counterpart_id)
		async with pool.acquire() as conn:
			record = await conn.fetchrow(
				"""
				SELECT owner_id, counterpart_id, chat_id, created_at, last_message_at, last_message_preview
				FROM chat_links WHERE owner_id = $1 AND counterpart_id = $2
				""",
				owner_id,
				counterpart_id,
			)
		return _link_from_record(record) if record else None

	@with_store_retry("links.list")
	async def list_for_owner(self, owner_id: str, *, limit: int = 50, offset: int = 0) -> List[ChatLink]:
		pool = await get_pool_or_none()
		if pool is None:
			return await _MEMORY_LINKS.list_for_owner(owner_id, limit=limit, offset=offset)
		async with pool.acquire() as conn:
			records = await conn.fetch(_LIST_SQL, owner_id, limit, offset)
		return [_link_from_record(record) for record in records]
