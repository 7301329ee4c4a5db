"""Conversation records and their lifecycle states."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional, Tuple

import ulid

EXPIRY_KEY = "chat:expiry"

REASON_USER_LEFT = "user-left-without-saving"
REASON_OTHER_LEFT = "other-left-without-saving"
REASON_YOU_LEFT_OTHER_SAVED = "you-left-other-saved"
REASON_EXPIRED = "expired"
REASON_DELETED = "deleted"

REASON_MESSAGES = {
	REASON_USER_LEFT: "The other person left without saving the chat.",
	REASON_OTHER_LEFT: "The other person left without saving the chat.",
	REASON_YOU_LEFT_OTHER_SAVED: "You left the chat even though the other person saved it.",
	REASON_EXPIRED: "This chat expired before both of you saved it.",
	REASON_DELETED: "The other person deleted this chat.",
}


def conversation_key(chat_id: str) -> str:
	return f"chat:conv:{chat_id}"


def pair_key(user_one: str, user_two: str) -> str:
	first, second = sorted((str(user_one), str(user_two)))
	return f"chat:pair:{first}:{second}"


def new_chat_id() -> str:
	return str(ulid.new())


class ChatKind(str, Enum):
	TEMPORARY = "temporary"
	PERMANENT = "permanent"


class ChatState(str, Enum):
	TEMPORARY = "temporary"
	PENDING_PROMOTION = "pending_promotion"
	PERMANENT = "permanent"
	TERMINATED = "terminated"


EXPIRING_STATES = frozenset({ChatState.TEMPORARY, ChatState.PENDING_PROMOTION})


def _ts(value: Optional[datetime]) -> str:
	return value.astimezone(timezone.utc).isoformat() if value else ""


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
	return datetime.fromisoformat(value) if value else None


@dataclass(slots=True)
class Conversation:
	chat_id: str
	participants: Tuple[str, str]
	kind: ChatKind
	state: ChatState
	created_by: str
	created_at: datetime
	saved_by: frozenset[str] = field(default_factory=frozenset)
	expires_at: Optional[datetime] = None
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None
	terminated_reason: Optional[str] = None
	terminated_by: Optional[str] = None

	@staticmethod
	def _pair(user_one: str, user_two: str) -> Tuple[str, str]:
		if not user_one or not user_two or str(user_one) == str(user_two):
			raise ValueError("a conversation needs two distinct participants")
		return (str(user_one), str(user_two))

	@classmethod
	def new_temporary(
		cls,
		user_one: str,
		user_two: str,
		*,
		created_by: str,
		now: datetime,
		ttl_seconds: int,
		chat_id: Optional[str] = None,
	) -> "Conversation":
		return cls(
			chat_id=chat_id or new_chat_id(),
			participants=cls._pair(user_one, user_two),
			kind=ChatKind.TEMPORARY,
			state=ChatState.TEMPORARY,
			created_by=created_by,
			created_at=now,
			expires_at=now + timedelta(seconds=ttl_seconds),
		)

	@classmethod
	def new_permanent(cls, user_one: str, user_two: str, *, created_by: str, now: datetime) -> "Conversation":
		participants = cls._pair(user_one, user_two)
		return cls(
			chat_id=new_chat_id(),
			participants=participants,
			kind=ChatKind.PERMANENT,
			state=ChatState.PERMANENT,
			created_by=created_by,
			created_at=now,
			saved_by=frozenset(participants),
		)

	def is_participant(self, user_id: str) -> bool:
		return user_id in self.participants

	def counterpart(self, user_id: str) -> str:
		first, second = self.participants
		return second if user_id == first else first

	@property
	def is_permanent(self) -> bool:
		return self.state is ChatState.PERMANENT

	@property
	def is_terminated(self) -> bool:
		return self.state is ChatState.TERMINATED

	def with_save(self, user_id: str) -> "Conversation":
		"""Add ``user_id`` to savedBy, promoting when the set covers both participants."""
		saved = self.saved_by | {user_id}
		if saved == frozenset(self.participants):
			return replace(self, saved_by=saved, kind=ChatKind.PERMANENT, state=ChatState.PERMANENT, expires_at=None)
		return replace(self, saved_by=saved, state=ChatState.PENDING_PROMOTION)

	def terminated(self, *, reason: str, by: Optional[str]) -> "Conversation":
		return replace(self, state=ChatState.TERMINATED, terminated_reason=reason, terminated_by=by)

	def with_activity(self, *, at: datetime, preview: str) -> "Conversation":
		return replace(self, last_message_at=at, last_message_preview=preview)

	def to_mapping(self) -> dict[str, str]:
		return {
			"chat_id": self.chat_id,
			"participants": json.dumps(list(self.participants)),
			"kind": self.kind.value,
			"state": self.state.value,
			"created_by": self.created_by,
			"created_at": _ts(self.created_at),
			"saved_by": json.dumps(sorted(self.saved_by)),
			"expires_at": _ts(self.expires_at),
			"last_message_at": _ts(self.last_message_at),
			"last_message_preview": self.last_message_preview or "",
			"terminated_reason": self.terminated_reason or "",
			"terminated_by": self.terminated_by or "",
		}

	@classmethod
	def from_mapping(cls, data: Mapping[str, str]) -> Optional["Conversation"]:
		if not data or "chat_id" not in data:
			return None
		first, second = json.loads(data["participants"])
		return cls(
			chat_id=data["chat_id"],
			participants=(first, second),
			kind=ChatKind(data["kind"]),
			state=ChatState(data["state"]),
			created_by=data.get("created_by", ""),
			created_at=_parse_ts(data.get("created_at")),
			saved_by=frozenset(json.loads(data.get("saved_by") or "[]")),
			expires_at=_parse_ts(data.get("expires_at")),
			last_message_at=_parse_ts(data.get("last_message_at")),
			last_message_preview=data.get("last_message_preview") or None,
			terminated_reason=data.get("terminated_reason") or None,
			terminated_by=data.get("terminated_by") or None,
		)


@dataclass(slots=True)
class ChatLink:
	"""Durable per-participant pointer to a permanent conversation."""

	owner_id: str
	counterpart_id: str
	chat_id: str
	created_at: Optional[datetime] = None
	last_message_at: Optional[datetime] = None
	last_message_preview: Optional[str] = None


@dataclass(slots=True)
class SaveResult:
	conversation: Conversation
	promoted: bool


@dataclass(slots=True)
class TerminateResult:
	conversation: Conversation
	terminated: bool
