"""Append-only per-chat message log on Redis streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import ulid

from tandem.domain.conversations.exceptions import MessageRejected
from tandem.infra.redis import redis_client
from tandem.infra.retry import with_store_retry
from tandem.settings import settings

logger = logging.getLogger(__name__)


def log_key(chat_id: str) -> str:
	return f"chat:log:{chat_id}"


def preview_of(body: str) -> str:
	return body[: settings.message_preview_length]


@dataclass(slots=True)
class ChatMessage:
	message_id: str
	chat_id: str
	sender_id: str
	body: str
	created_at: datetime
	client_msg_id: Optional[str] = None

	def to_dict(self) -> dict:
		return {
			"message_id": self.message_id,
			"chat_id": self.chat_id,
			"sender_id": self.sender_id,
			"body": self.body,
			"client_msg_id": self.client_msg_id,
			"created_at": self.created_at.isoformat(),
		}

	@classmethod
	def from_fields(cls, chat_id: str, fields: dict) -> "ChatMessage":
		return cls(
			message_id=fields["message_id"],
			chat_id=chat_id,
			sender_id=fields["sender_id"],
			body=fields["body"],
			created_at=datetime.fromisoformat(fields["created_at"]),
			client_msg_id=fields.get("client_msg_id") or None,
		)


class MessageLog:
	def __init__(self, client=None) -> None:
		self._client = client

	@property
	def _redis(self):
		return self._client if self._client is not None else redis_client

	@with_store_retry("messages.append")
	async def append(
		self,
		chat_id: str,
		sender_id: str,
		body: str,
		*,
		client_msg_id: Optional[str] = None,
		now: Optional[datetime] = None,
	) -> ChatMessage:
		body = (body or "").strip()
		if not body:
			raise MessageRejected("empty_message")
		if len(body) > settings.message_max_length:
			raise MessageRejected("message_too_long")
		message = ChatMessage(
			message_id=str(ulid.new()),
			chat_id=chat_id,
			sender_id=sender_id,
			body=body,
			created_at=now or datetime.now(timezone.utc),
			client_msg_id=client_msg_id,
		)
		fields = {
			"message_id": message.message_id,
			"sender_id": sender_id,
			"body": body,
			"created_at": message.created_at.isoformat(),
			"client_msg_id": client_msg_id or "",
		}
		maxlen = settings.message_log_maxlen if settings.message_log_maxlen > 0 else None
		await self._redis.xadd(log_key(chat_id), fields, maxlen=maxlen, approximate=False)
		return message

	@with_store_retry("messages.history")
	async def history(self, chat_id: str, *, limit: int = 50) -> List[ChatMessage]:
		"""Newest ``limit`` messages, oldest first."""
		rows = await self._redis.xrevrange(log_key(chat_id), count=limit)
		return [ChatMessage.from_fields(chat_id, fields) for _, fields in reversed(rows)]

	async def purge(self, chat_id: str) -> None:
		try:
			await self._redis.delete(log_key(chat_id))
		except Exception:
			logger.warning("message log purge failed chat=%s", chat_id, exc_info=True)
