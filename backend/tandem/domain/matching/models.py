"""Domain models for the matchmaking queue."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional

QUEUE_KEY = "match:queue"
EXPIRY_KEY = "match:expiry"


def entry_key(user_id: str) -> str:
	return f"match:entry:{user_id}"


class QueueStatus(str, Enum):
	SEARCHING = "searching"
	MATCHED = "matched"
	EXPIRED = "expired"
	CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({QueueStatus.EXPIRED, QueueStatus.CANCELLED})


def _ts(value: datetime) -> str:
	return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> Optional[datetime]:
	if not value:
		return None
	return datetime.fromisoformat(value)


@dataclass(slots=True)
class QueueEntry:
	"""One user's search, stored as a Redis hash keyed by user id."""

	user_id: str
	status: QueueStatus
	search_started_at: datetime
	expires_at: datetime
	blocked_snapshot: frozenset[str] = field(default_factory=frozenset)
	paired_chat_id: Optional[str] = None

	@classmethod
	def start(cls, user_id: str, *, blocked: set[str], now: datetime, ttl_seconds: int) -> "QueueEntry":
		return cls(
			user_id=user_id,
			status=QueueStatus.SEARCHING,
			search_started_at=now,
			expires_at=now + timedelta(seconds=ttl_seconds),
			blocked_snapshot=frozenset(blocked),
		)

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES

	def is_live(self, now: datetime) -> bool:
		return not self.is_terminal and self.expires_at > now

	def is_searching(self, now: datetime) -> bool:
		return self.status is QueueStatus.SEARCHING and self.expires_at > now

	def excludes(self, other_id: str) -> bool:
		return other_id in self.blocked_snapshot

	def matched(self, chat_id: str, expires_at: datetime) -> "QueueEntry":
		return replace(self, status=QueueStatus.MATCHED, paired_chat_id=chat_id, expires_at=expires_at)

	def with_status(self, status: QueueStatus) -> "QueueEntry":
		return replace(self, status=status)

	def to_mapping(self) -> dict[str, str]:
		return {
			"user_id": self.user_id,
			"status": self.status.value,
			"search_started_at": _ts(self.search_started_at),
			"expires_at": _ts(self.expires_at),
			"blocked": json.dumps(sorted(self.blocked_snapshot)),
			"paired_chat_id": self.paired_chat_id or "",
		}

	@classmethod
	def from_mapping(cls, data: Mapping[str, str]) -> Optional["QueueEntry"]:
		if not data or "user_id" not in data:
			return None
		return cls(
			user_id=data["user_id"],
			status=QueueStatus(data["status"]),
			search_started_at=_parse_ts(data["search_started_at"]),
			expires_at=_parse_ts(data["expires_at"]),
			blocked_snapshot=frozenset(json.loads(data.get("blocked") or "[]")),
			paired_chat_id=data.get("paired_chat_id") or None,
		)


@dataclass(slots=True)
class SearchOutcome:
	"""What ``request_search`` hands back to the caller."""

	status: str
	chat_id: Optional[str] = None
	counterpart: Optional[dict] = None
	expires_at: Optional[datetime] = None

	@property
	def matched(self) -> bool:
		return self.status == "matched"


@dataclass(slots=True)
class SearchState:
	searching: bool = False
	matched: bool = False
	chat_id: Optional[str] = None
	timed_out: bool = False
	expires_at: Optional[datetime] = None
