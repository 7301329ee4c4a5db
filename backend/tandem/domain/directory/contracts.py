"""Interfaces of the collaborators the matchmaking core consumes but does not own."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol


@dataclass(slots=True)
class BanState:
	is_banned: bool = False
	banned_until: Optional[datetime] = None

	def is_active(self, now: datetime) -> bool:
		if not self.is_banned:
			return False
		return self.banned_until is None or self.banned_until > now


@dataclass(slots=True)
class ProfileSummary:
	"""Public view of a user shown to a chat counterpart."""

	id: str
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None

	def to_payload(self) -> dict:
		return {"id": self.id, "display_name": self.display_name, "avatar_url": self.avatar_url}


class BlockRegistry(Protocol):
	async def blocked_pairs(self, user_id: str) -> set[str]:
		"""Users this user blocked plus users who blocked this user."""
		...


class ModerationGate(Protocol):
	async def ban_state(self, user_id: str) -> BanState:
		...

	async def is_eligible_to_match(self, user_id: str) -> bool:
		...


class ProfileDirectory(Protocol):
	async def public_profile(self, user_id: str) -> ProfileSummary:
		...


class ContactEligibility(Protocol):
	async def may_start_direct(self, user_id: str, other_id: str, *, group_id: Optional[str] = None) -> bool:
		...
