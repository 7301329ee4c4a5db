from datetime import datetime, timedelta, timezone

import pytest

from tandem.domain.directory import DirectoryRepository


@pytest.mark.asyncio
async def test_blocked_pairs_are_symmetric(directory):
	directory.add_block("alice", "bob")
	directory.add_block("carol", "alice")
	repo = DirectoryRepository()

	assert await repo.blocked_pairs("alice") == {"bob", "carol"}
	assert await repo.blocked_pairs("bob") == {"alice"}
	assert await repo.blocked_pairs("dave") == set()


@pytest.mark.asyncio
async def test_active_ban_blocks_matching(directory):
	directory.set_ban("mallory", banned_until=datetime.now(timezone.utc) + timedelta(hours=1))
	directory.set_ban("oscar")
	repo = DirectoryRepository()

	assert await repo.is_eligible_to_match("mallory") is False
	assert await repo.is_eligible_to_match("oscar") is False
	assert await repo.is_eligible_to_match("alice") is True


@pytest.mark.asyncio
async def test_expired_ban_is_lifted_lazily(directory):
	directory.set_ban("mallory", banned_until=datetime.now(timezone.utc) - timedelta(minutes=1))
	repo = DirectoryRepository()

	assert await repo.is_eligible_to_match("mallory") is True
	state = await repo.ban_state("mallory")
	assert state.is_banned is False


@pytest.mark.asyncio
async def test_unknown_profile_yields_id_only():
	profile = await DirectoryRepository().public_profile("stranger")

	assert profile.to_payload() == {"id": "stranger", "display_name": None, "avatar_url": None}


@pytest.mark.asyncio
async def test_direct_eligibility_needs_common_group(directory):
	directory.add_group_member("g-1", "alice")
	directory.add_group_member("g-1", "bob")
	directory.add_group_member("g-2", "carol")
	repo = DirectoryRepository()

	assert await repo.may_start_direct("alice", "bob") is True
	assert await repo.may_start_direct("alice", "bob", group_id="g-1") is True
	assert await repo.may_start_direct("alice", "bob", group_id="g-2") is False
	assert await repo.may_start_direct("alice", "carol") is False
