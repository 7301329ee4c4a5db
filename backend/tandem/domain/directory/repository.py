"""Postgres-backed directory lookups with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from tandem.domain.directory.contracts import BanState, ProfileSummary
from tandem.infra.postgres import get_pool_or_none
from tandem.infra.retry import with_store_retry

logger = logging.getLogger(__name__)


class _InMemoryDirectory:
	"""Fallback directory used in tests and local development without Postgres."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._blocks: set[tuple[str, str]] = set()
		self._bans: dict[str, BanState] = {}
		self._profiles: dict[str, ProfileSummary] = {}
		self._groups: dict[str, set[str]] = {}

	def reset(self) -> None:
		self._blocks.clear()
		self._bans.clear()
		self._profiles.clear()
		self._groups.clear()

	def add_block(self, blocker_id: str, blocked_id: str) -> None:
		self._blocks.add((str(blocker_id), str(blocked_id)))

	def set_ban(self, user_id: str, *, banned_until: Optional[datetime] = None) -> None:
		self._bans[str(user_id)] = BanState(is_banned=True, banned_until=banned_until)

	def set_profile(self, user_id: str, *, display_name: Optional[str] = None, avatar_url: Optional[str] = None) -> None:
		self._profiles[str(user_id)] = ProfileSummary(id=str(user_id), display_name=display_name, avatar_url=avatar_url)

	def add_group_member(self, group_id: str, user_id: str) -> None:
		self._groups.setdefault(str(group_id), set()).add(str(user_id))

	async def blocked_pairs(self, user_id: str) -> set[str]:
		async with self._lock:
			result: set[str] = set()
			for blocker, blocked in self._blocks:
				if blocker == user_id:
					result.add(blocked)
				elif blocked == user_id:
					result.add(blocker)
			return result

	async def ban_state(self, user_id: str) -> BanState:
		async with self._lock:
			state = self._bans.get(user_id)
			return BanState(state.is_banned, state.banned_until) if state else BanState()

	async def lift_ban(self, user_id: str) -> None:
		async with self._lock:
			self._bans.pop(user_id, None)

	async def public_profile(self, user_id: str) -> ProfileSummary:
		async with self._lock:
			return self._profiles.get(user_id) or ProfileSummary(id=user_id)

	async def shared_groups(self, user_id: str, other_id: str) -> set[str]:
		async with self._lock:
			return {gid for gid, members in self._groups.items() if user_id in members and other_id in members}


_MEMORY_DIRECTORY = _InMemoryDirectory()


def memory_directory() -> _InMemoryDirectory:
	return _MEMORY_DIRECTORY


class DirectoryRepository:
	"""Implements BlockRegistry, ModerationGate, ProfileDirectory and ContactEligibility."""

	@with_store_retry("directory.blocked_pairs")
	async def blocked_pairs(self, user_id: str) -> set[str]:
		pool = await get_pool_or_none()
		if pool is None:
			return await _MEMORY_DIRECTORY.blocked_pairs(user_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT blocked_id AS other_id FROM user_blocks WHERE blocker_id = $1
				UNION
				SELECT blocker_id AS other_id FROM user_blocks WHERE blocked_id = $1
				""",
				user_id,
			)
		return {str(row["other_id"]) for row in rows}

	@with_store_retry("directory.ban_state")
	async def ban_state(self, user_id: str) -> BanState:
		pool = await get_pool_or_none()
		if pool is None:
			return await _MEMORY_DIRECTORY.ban_state(user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT is_banned, banned_until FROM user_bans WHERE user_id = $1",
				user_id,
			)
		if not row:
			return BanState()
		return BanState(is_banned=bool(row["is_banned"]), banned_until=row["banned_until"])

	@with_store_retry("directory.lift_ban")
	async def _lift_ban(self, user_id: str) -> None:
		pool = await get_pool_or_none()
		if pool is None:
			await _MEMORY_DIRECTORY.lift_ban(user_id)
			return
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				UPDATE user_bans
				SET is_banned = FALSE, banned_until = NULL, ban_reason = NULL
				WHERE user_id = $1 AND banned_until IS NOT NULL AND banned_until <= NOW()
				""",
				user_id,
			)

	async def is_eligible_to_match(self, user_id: str) -> bool:
		state = await self.ban_state(user_id)
		if not state.is_banned:
			return True
		now = datetime.now(timezone.utc)
		if state.is_active(now):
			return False
		await self._lift_ban(user_id)
		logger.info("temporary ban lifted for user=%s", user_id)
		return True

	@with_store_retry("directory.public_profile")
	async def public_profile(self, user_id: str) -> ProfileSummary:
		pool = await get_pool_or_none()
		if pool is None:
			return await _MEMORY_DIRECTORY.public_profile(user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT id, display_name, avatar_url FROM users WHERE id = $1",
				user_id,
			)
		if not row:
			return ProfileSummary(id=user_id)
		return ProfileSummary(id=str(row["id"]), display_name=row["display_name"], avatar_url=row["avatar_url"])

	@with_store_retry("directory.shared_groups")
	async def _shared_groups(self, user_id: str, other_id: str) -> set[str]:
		pool = await get_pool_or_none()
		if pool is None:
			return await _MEMORY_DIRECTORY.shared_groups(user_id, other_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT a.group_id
				FROM group_members a
				JOIN group_members b ON b.group_id = a.group_id
				WHERE a.user_id = $1 AND b.user_id = $2
				""",
				user_id,
				other_id,
			)
		return {str(row["group_id"]) for row in rows}

	async def may_start_direct(self, user_id: str, other_id: str, *, group_id: Optional[str] = None) -> bool:
		shared = await self._shared_groups(user_id, other_id)
		if group_id is not None:
			return str(group_id) in shared
		return bool(shared)


_directory: DirectoryRepository | None = None


def get_directory() -> DirectoryRepository:
	global _directory
	if _directory is None:
		_directory = DirectoryRepository()
	return _directory


def set_directory(directory: DirectoryRepository | None) -> None:
	global _directory
	_directory = directory
